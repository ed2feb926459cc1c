"""Append-only ledger of workflow executions."""

import json
import uuid
from typing import Any, Dict, List, Optional

import structlog

from mailflow.core.automation_store import SCHEMA as AUTOMATION_SCHEMA
from mailflow.core.database import SQLiteDatabase, to_epoch, from_epoch
from mailflow.core.exceptions import ValidationError
from mailflow.models.automation import utcnow
from mailflow.models.common import ExecutionStatus
from mailflow.models.execution import ExecutionRecord, ExecutionStats

logger = structlog.get_logger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS automation_executions (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        trigger_data TEXT,
        execution_data TEXT,
        error_message TEXT,
        started_at REAL NOT NULL,
        completed_at REAL,
        duration_ms INTEGER
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_executions_agent_started
    ON automation_executions(agent_id, started_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_executions_workflow_started
    ON automation_executions(workflow_id, started_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_executions_status
    ON automation_executions(status)
    """,
]

_SELECT = """
    SELECT e.*, w.name AS workflow_name
    FROM automation_executions e
    LEFT JOIN automation_workflows w ON e.workflow_id = w.id
"""


class ExecutionLedger:
    """Creates execution records in ``running`` state and finalizes each exactly once."""

    def __init__(self, database: Optional[SQLiteDatabase] = None):
        self.database = database or SQLiteDatabase()

    async def initialize(self) -> None:
        # History queries join workflow names
        await self.database.initialize_schema("automation", AUTOMATION_SCHEMA)
        await self.database.initialize_schema("executions", SCHEMA)

    @staticmethod
    def _row_to_record(row) -> ExecutionRecord:
        keys = row.keys()
        return ExecutionRecord(
            id=row['id'],
            agent_id=row['agent_id'],
            workflow_id=row['workflow_id'],
            status=ExecutionStatus(row['status']),
            trigger_data=json.loads(row['trigger_data']) if row['trigger_data'] else {},
            execution_data=json.loads(row['execution_data']) if row['execution_data'] else None,
            error_message=row['error_message'],
            started_at=from_epoch(row['started_at']),
            completed_at=from_epoch(row['completed_at']),
            duration_ms=row['duration_ms'],
            workflow_name=row['workflow_name'] if 'workflow_name' in keys else None,
        )

    async def create(
        self,
        agent_id: str,
        workflow_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> ExecutionRecord:
        """Record a new execution in ``running`` state with a payload snapshot."""
        record = ExecutionRecord(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            workflow_id=workflow_id,
            status=ExecutionStatus.RUNNING,
            started_at=utcnow(),
            trigger_data=trigger_data or {},
        )
        await self.database.execute_write("""
            INSERT INTO automation_executions
            (id, agent_id, workflow_id, status, trigger_data, started_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            record.id,
            record.agent_id,
            record.workflow_id,
            record.status.value,
            json.dumps(record.trigger_data, default=str),
            to_epoch(record.started_at),
        ))
        logger.debug("Execution started", execution_id=record.id, workflow_id=workflow_id)
        return record

    async def finalize(
        self,
        execution_id: str,
        status: ExecutionStatus,
        execution_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> ExecutionRecord:
        """Move a running execution to a terminal status.

        Raises:
            ValidationError: If ``status`` is not terminal, or the record is
                missing or already finalized.
        """
        status = ExecutionStatus(status)
        if not status.is_terminal:
            raise ValidationError(f"Cannot finalize execution with status {status.value}")

        row = await self.database.fetch_one(
            "SELECT started_at FROM automation_executions WHERE id = ?", (execution_id,)
        )
        if row is None:
            raise ValidationError(f"Execution not found: {execution_id}")

        completed_at = utcnow()
        duration_ms = max(0, int(round((to_epoch(completed_at) - row['started_at']) * 1000)))

        # The status guard makes the transition one-way even under concurrent finalizers
        changed = await self.database.execute_write("""
            UPDATE automation_executions
            SET status = ?, execution_data = ?, error_message = ?, completed_at = ?, duration_ms = ?
            WHERE id = ? AND status = ?
        """, (
            status.value,
            json.dumps(execution_data, default=str) if execution_data is not None else None,
            error_message,
            to_epoch(completed_at),
            duration_ms,
            execution_id,
            ExecutionStatus.RUNNING.value,
        ))
        if not changed:
            raise ValidationError(
                f"Execution {execution_id} is already finalized",
                {"execution_id": execution_id}
            )

        logger.debug(
            "Execution finalized",
            execution_id=execution_id,
            status=status.value,
            duration_ms=duration_ms
        )
        return await self.get(execution_id)

    async def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        row = await self.database.fetch_one(_SELECT + " WHERE e.id = ?", (execution_id,))
        return self._row_to_record(row) if row else None

    async def list_by_agent(self, agent_id: str, limit: int = 50, offset: int = 0) -> List[ExecutionRecord]:
        """Execution history of an agent, most recent first."""
        rows = await self.database.fetch_all(
            _SELECT + " WHERE e.agent_id = ? ORDER BY e.started_at DESC, e.rowid DESC LIMIT ? OFFSET ?",
            (agent_id, limit, offset)
        )
        return [self._row_to_record(row) for row in rows]

    async def list_by_workflow(self, workflow_id: str, limit: int = 50, offset: int = 0) -> List[ExecutionRecord]:
        rows = await self.database.fetch_all(
            _SELECT + " WHERE e.workflow_id = ? ORDER BY e.started_at DESC, e.rowid DESC LIMIT ? OFFSET ?",
            (workflow_id, limit, offset)
        )
        return [self._row_to_record(row) for row in rows]

    async def count(self, agent_id: Optional[str] = None, workflow_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) AS total FROM automation_executions WHERE 1=1"
        params: List[Any] = []
        if agent_id:
            query += " AND agent_id = ?"
            params.append(agent_id)
        if workflow_id:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        row = await self.database.fetch_one(query, params)
        return row['total']

    async def get_stats(
        self,
        agent_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        recent: int = 50,
    ) -> ExecutionStats:
        """Counts by status plus the duration distribution of recent finished runs."""
        where = " WHERE 1=1"
        params: List[Any] = []
        if agent_id:
            where += " AND agent_id = ?"
            params.append(agent_id)
        if workflow_id:
            where += " AND workflow_id = ?"
            params.append(workflow_id)

        rows = await self.database.fetch_all(
            "SELECT status, COUNT(*) AS total, AVG(duration_ms) AS avg_duration"
            " FROM automation_executions" + where + " GROUP BY status",
            params
        )
        by_status = {status.value: 0 for status in ExecutionStatus}
        total = 0
        weighted_duration = 0.0
        finished = 0
        for row in rows:
            by_status[row['status']] = row['total']
            total += row['total']
            if row['avg_duration'] is not None:
                weighted_duration += row['avg_duration'] * row['total']
                finished += row['total']

        duration_rows = await self.database.fetch_all(
            "SELECT duration_ms FROM automation_executions" + where +
            " AND duration_ms IS NOT NULL ORDER BY started_at DESC LIMIT ?",
            params + [recent]
        )

        return ExecutionStats(
            total=total,
            by_status=by_status,
            avg_duration_ms=(weighted_duration / finished) if finished else None,
            recent_durations_ms=[row['duration_ms'] for row in duration_rows],
        )
