"""Thin aiosqlite access layer shared by the automation store and the execution ledger."""

import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence

import aiosqlite
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from mailflow.core.config import get_config
from mailflow.core.exceptions import DatabaseError, TemporaryDatabaseError

logger = structlog.get_logger(__name__)


def to_epoch(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _is_locked(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class SQLiteDatabase:
    """Connection factory plus retrying write helpers for one SQLite file."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize the database wrapper.

        Args:
            db_path: Path to SQLite database. If None, uses config default.
        """
        config = get_config()
        self.db_path = db_path or config.sqlite.database_path
        self.busy_timeout = config.sqlite.busy_timeout
        self.journal_mode = config.sqlite.journal_mode
        self._initialized_schemas: set = set()

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a configured connection with ``Row`` results."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout / 1000.0) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(f"PRAGMA journal_mode={self.journal_mode}")
            await db.execute(f"PRAGMA busy_timeout={self.busy_timeout}")
            await db.execute("PRAGMA foreign_keys=ON")
            yield db

    async def initialize_schema(self, name: str, statements: Iterable[str]) -> None:
        """Run idempotent DDL statements once per process for ``name``."""
        if name in self._initialized_schemas:
            return
        try:
            async with self.connect() as db:
                for statement in statements:
                    await db.execute(statement)
                await db.commit()
            self._initialized_schemas.add(name)
            logger.debug("Schema initialized", schema=name, db_path=self.db_path)
        except Exception as e:
            logger.error("Failed to initialize schema", schema=name, error=str(e))
            raise DatabaseError(f"Failed to initialize {name} schema: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        retry=retry_if_exception_type(TemporaryDatabaseError),
        reraise=True
    )
    async def execute_write(self, query: str, parameters: Sequence[Any] = ()) -> int:
        """Execute a single write statement and commit.

        Returns:
            Number of rows changed.
        """
        try:
            async with self.connect() as db:
                cursor = await db.execute(query, parameters)
                await db.commit()
                return cursor.rowcount
        except sqlite3.OperationalError as e:
            if _is_locked(e):
                logger.warning("Database busy, retrying write", error=str(e))
                raise TemporaryDatabaseError(f"Database busy: {e}")
            raise DatabaseError(f"Write failed: {e}")
        except sqlite3.Error as e:
            raise DatabaseError(f"Write failed: {e}")

    async def fetch_one(self, query: str, parameters: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        try:
            async with self.connect() as db:
                async with db.execute(query, parameters) as cursor:
                    return await cursor.fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Query failed: {e}")

    async def fetch_all(self, query: str, parameters: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        try:
            async with self.connect() as db:
                async with db.execute(query, parameters) as cursor:
                    return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise DatabaseError(f"Query failed: {e}")
