"""Command line entry point for the mailflow automation engine."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from mailflow.cli.base import (
    console,
    key_value_table,
    parse_payload,
    run_async_command,
    styled_status,
)
from mailflow.core.config import get_config, reload_config
from mailflow.core.logger import configure_logging
from mailflow.services.automation_service import get_automation_service

app = typer.Typer(help="Mailflow - email-driven workflow automation")

SENSITIVE_KEYS = ("password", "token", "key", "secret")


@app.callback()
def main(
    config_path: Optional[Path] = typer.Option(None, "--config-path", "-c", help="Path to configuration file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="Override the configured log level"),
):
    """Load configuration and set up logging before any command runs."""
    config = reload_config(config_path) if config_path else get_config()
    configure_logging(log_level or config.logging.level, config.logging.format)


@app.command()
@run_async_command
async def init():
    """Create the database schema."""
    service = await get_automation_service()
    console.print(f"[green]✅ Database ready:[/green] {service.database.db_path}")


@app.command()
@run_async_command
async def run(
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Seconds between poll cycles"),
):
    """Start the polling scheduler and run until interrupted."""
    service = await get_automation_service()
    interval = interval or get_config().scheduler.interval_seconds
    service.start_polling(interval)
    console.print(f"[blue]Polling mailboxes every {interval}s. Press Ctrl+C to stop.[/blue]")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await service.stop_polling()


@app.command()
@run_async_command
async def poll(agent_id: str = typer.Argument(..., help="Agent to poll")):
    """Poll one agent's mailbox now."""
    service = await get_automation_service()
    result = await service.poll_agent_now(agent_id)
    table = key_value_table("Poll Result", result.to_dict())
    console.print(table)


@app.command()
@run_async_command
async def execute(
    workflow_id: str = typer.Argument(..., help="Workflow to execute"),
    payload: Optional[str] = typer.Option(None, "--payload", "-p", help="Trigger payload as a JSON object"),
    payload_file: Optional[Path] = typer.Option(None, "--payload-file", "-f", help="File holding the JSON payload"),
):
    """Execute a workflow now with a caller-supplied payload."""
    if payload_file:
        payload = payload_file.read_text(encoding="utf-8")
    data = parse_payload(payload)

    service = await get_automation_service()
    outcome = await service.execute_workflow_now(workflow_id, data)

    console.print(f"Execution {outcome.execution_id}: {styled_status(outcome.status.value)}"
                  f"{' (conditions not met)' if outcome.skipped else ''}")
    if outcome.actions:
        table = Table(title="Actions")
        table.add_column("#", style="dim")
        table.add_column("Type", style="cyan")
        table.add_column("Status")
        table.add_column("Detail", style="yellow")
        for index, action in enumerate(outcome.actions, 1):
            detail = action.get("error") or str(action.get("result", ""))
            table.add_row(str(index), action["type"], styled_status(action["status"]), detail[:80])
        console.print(table)
    if outcome.error_message:
        console.print(f"[red]{outcome.error_message}[/red]")
        raise typer.Exit(1)


@app.command()
@run_async_command
async def history(
    agent_id: str = typer.Argument(..., help="Agent whose executions to list"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of executions"),
    offset: int = typer.Option(0, "--offset", help="Executions to skip"),
):
    """Show an agent's execution history, most recent first."""
    service = await get_automation_service()
    page = await service.get_execution_history(agent_id, limit=limit, offset=offset)

    table = Table(title=f"Executions ({offset + 1}-{offset + len(page['executions'])} of {page['total']})")
    table.add_column("Started", style="cyan")
    table.add_column("Workflow", style="yellow")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Error", style="red")
    for record in page["executions"]:
        table.add_row(
            record.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.workflow_name or record.workflow_id,
            styled_status(record.status.value),
            f"{record.duration_ms} ms" if record.duration_ms is not None else "-",
            (record.error_message or "")[:60],
        )
    console.print(table)


@app.command()
@run_async_command
async def stats(
    agent_id: Optional[str] = typer.Option(None, "--agent", "-a", help="Limit to one agent"),
    workflow_id: Optional[str] = typer.Option(None, "--workflow", "-w", help="Limit to one workflow"),
):
    """Show execution statistics."""
    service = await get_automation_service()
    execution_stats = await service.get_execution_stats(agent_id=agent_id, workflow_id=workflow_id)

    table = Table(title="Execution Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Total", str(execution_stats.total))
    for status, count in execution_stats.by_status.items():
        table.add_row(status.capitalize(), str(count))
    table.add_row("Success rate", f"{execution_stats.success_rate:.1%}")
    if execution_stats.avg_duration_ms is not None:
        table.add_row("Average duration", f"{execution_stats.avg_duration_ms:.0f} ms")
    for name, value in execution_stats.duration_distribution().items():
        if value is not None:
            table.add_row(f"Recent {name}", f"{value} ms")
    console.print(table)


@app.command()
@run_async_command
async def agents(owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Filter by owner")):
    """List automation agents."""
    service = await get_automation_service()
    table = Table(title="Agents")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Mailbox", style="yellow")
    table.add_column("Last checked")
    table.add_column("Workflows", justify="right")

    for agent in await service.list_agents(owner_id=owner):
        mailbox = await service.store.get_mailbox_config(agent.id)
        workflows = await service.list_workflows(agent.id)
        table.add_row(
            agent.id,
            agent.name,
            agent.type.value,
            styled_status(agent.status.value),
            mailbox.email_address if mailbox else "-",
            mailbox.last_checked_at.strftime("%Y-%m-%d %H:%M:%S")
            if mailbox and mailbox.last_checked_at else "never",
            str(len(workflows)),
        )
    console.print(table)


@app.command()
def config(show: bool = typer.Option(True, "--show/--no-show", help="Show current configuration")):
    """Show the active configuration with secrets hidden."""
    if not show:
        console.print("[green]✅ Configuration is valid[/green]")
        return

    table = Table(title="Current Configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Key", style="yellow")
    table.add_column("Value", style="green")
    for section, values in get_config().to_dict().items():
        for key, value in values.items():
            if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS) and value:
                value = "***hidden***"
            table.add_row(section, key, str(value))
    console.print(table)


if __name__ == "__main__":
    app()
