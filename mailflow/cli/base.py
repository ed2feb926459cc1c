"""Shared CLI helpers."""

import asyncio
import functools
import json
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.table import Table

from mailflow.core.exceptions import MailflowError

console = Console()

STATUS_STYLES = {
    "success": "green",
    "active": "green",
    "ok": "green",
    "running": "yellow",
    "cancelled": "yellow",
    "inactive": "dim",
    "paused": "dim",
    "no_workflows": "dim",
    "no_messages": "dim",
    "failed": "red",
    "error": "red",
    "unauthorized": "red",
    "provider_error": "red",
}


def run_async_command(command_func):
    """Run an async command body with ``asyncio.run``, reporting engine errors cleanly."""
    @functools.wraps(command_func)
    def wrapper(*args, **kwargs):
        try:
            return asyncio.run(command_func(*args, **kwargs))
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        except MailflowError as e:
            console.print(f"\n[red]Error: {e.message}[/red]")
            raise typer.Exit(1)

    return wrapper


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def parse_payload(payload: Optional[str]) -> Dict[str, Any]:
    """Parse a JSON object given on the command line."""
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Payload is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise typer.BadParameter("Payload must be a JSON object")
    return data


def key_value_table(title: str, values: Dict[str, Any]) -> Table:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in values.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
        table.add_row(key, "" if value is None else str(value))
    return table
