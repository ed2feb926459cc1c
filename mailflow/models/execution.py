"""Execution ledger data models."""

from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from datetime import datetime

from .automation import format_timestamp
from .common import ExecutionStatus


@dataclass
class ExecutionRecord:
    """One realized run of a workflow against one trigger payload."""
    id: str
    agent_id: str
    workflow_id: str
    status: ExecutionStatus
    started_at: datetime
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    execution_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    workflow_name: Optional[str] = None

    @property
    def is_finalized(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "trigger_data": self.trigger_data,
            "execution_data": self.execution_data,
            "error_message": self.error_message,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "duration_ms": self.duration_ms,
        }


@dataclass
class ExecutionStats:
    """Aggregate execution statistics."""
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    avg_duration_ms: Optional[float] = None
    recent_durations_ms: List[int] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        finished = self.total - self.by_status.get(ExecutionStatus.RUNNING.value, 0)
        if finished <= 0:
            return 0.0
        return self.by_status.get(ExecutionStatus.SUCCESS.value, 0) / finished

    def duration_distribution(self) -> Dict[str, Optional[int]]:
        """Min, median, p95 and max of the recent finished runs."""
        if not self.recent_durations_ms:
            return {"min": None, "median": None, "p95": None, "max": None}
        ordered = sorted(self.recent_durations_ms)
        p95_index = min(len(ordered) - 1, int(round(0.95 * (len(ordered) - 1))))
        return {
            "min": ordered[0],
            "median": ordered[(len(ordered) - 1) // 2],
            "p95": ordered[p95_index],
            "max": ordered[-1],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_status": self.by_status,
            "avg_duration_ms": self.avg_duration_ms,
            "success_rate": self.success_rate,
            "recent_durations": self.duration_distribution(),
        }


@dataclass
class ExecutionOutcome:
    """Result returned by the pipeline executor to its caller."""
    execution_id: str
    status: ExecutionStatus
    skipped: bool = False
    actions: List[Dict[str, Any]] = field(default_factory=list)
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status != ExecutionStatus.FAILED


@dataclass
class PollResult:
    """Summary of one per-agent poll."""
    agent_id: str
    status: str = "ok"  # ok | no_workflows | no_messages | unauthorized | provider_error
    messages: int = 0
    executions: int = 0
    failures: int = 0
    last_email_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "status": self.status,
            "messages": self.messages,
            "executions": self.executions,
            "failures": self.failures,
            "last_email_id": self.last_email_id,
            "error": self.error,
        }
