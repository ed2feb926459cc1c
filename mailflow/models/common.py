"""Common enums and types used across models."""

from enum import Enum
from typing import Any


class AgentType(str, Enum):
    """Kinds of automation agents."""
    EMAIL_INBOUND = "email_inbound"
    EMAIL_OUTBOUND = "email_outbound"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"


class AgentStatus(str, Enum):
    """Agent lifecycle status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    PAUSED = "paused"
    ERROR = "error"


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class ExecutionStatus(str, Enum):
    """Execution record status. ``RUNNING`` is the only non-terminal value."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class TriggerType(str, Enum):
    """Trigger event types."""
    EMAIL_RECEIVED = "email_received"
    WEBHOOK_RECEIVED = "webhook_received"
    SCHEDULE = "schedule"


class ActionType(str, Enum):
    """Workflow action types."""
    SEND_EMAIL = "send_email"
    REPLY_TO_EMAIL = "reply_to_email"
    FORWARD_EMAIL = "forward_email"
    GENERATE_AI_REPLY = "generate_ai_reply"
    MARK_AS_READ = "mark_as_read"
    ADD_LABEL = "add_label"
    SAVE_TO_DATABASE = "save_to_database"
    HTTP_REQUEST = "http_request"


def as_bool(value: Any) -> bool:
    """Interpret filter flags that may arrive as strings from JSON or YAML."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)
