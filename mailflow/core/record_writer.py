"""Generic row writer behind the ``save_to_database`` action."""

import re
from typing import Any, Dict, Optional

import structlog

from mailflow.core.database import SQLiteDatabase
from mailflow.core.exceptions import ActionError, ValidationError

logger = structlog.get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Engine-owned tables are never writable from a workflow
PROTECTED_TABLES = {
    "automation_agents",
    "automation_workflows",
    "automation_executions",
    "email_agent_configs",
}


def _check_identifier(name: str, kind: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise ValidationError(f"Invalid {kind} name: {name!r}")
    return name


class SqliteRecordWriter:
    """Inserts one row of mapped values into a user table of the engine database."""

    def __init__(self, database: Optional[SQLiteDatabase] = None):
        self.database = database or SQLiteDatabase()

    async def insert(self, table_name: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Insert ``values`` into ``table_name`` and return the stored row.

        Raises:
            ValidationError: On unsafe table or column names.
            ActionError: If the insert fails.
        """
        _check_identifier(table_name, "table")
        if table_name in PROTECTED_TABLES:
            raise ValidationError(f"Table {table_name} is reserved")
        if not values:
            raise ValidationError("Column mapping is empty")
        columns = [_check_identifier(column, "column") for column in values]

        placeholders = ", ".join("?" for _ in columns)
        try:
            async with self.database.connect() as db:
                cursor = await db.execute(
                    f"INSERT INTO {table_name} ({', '.join(columns)}) VALUES ({placeholders})",
                    [values[column] for column in columns]
                )
                row_id = cursor.lastrowid
                await db.commit()
                async with db.execute(f"SELECT * FROM {table_name} WHERE rowid = ?", (row_id,)) as select:
                    row = await select.fetchone()
        except Exception as e:
            logger.error("Failed to insert record", table=table_name, error=str(e))
            raise ActionError(f"Failed to save record to {table_name}: {e}")

        logger.debug("Record inserted", table=table_name, row_id=row_id)
        return dict(row) if row else {}
