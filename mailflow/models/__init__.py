"""Domain models for the mailflow automation engine.

This module contains all data models used throughout the application,
providing a centralized location for domain entities.
"""

from .email import EmailMessage, OutgoingEmail, SendResult
from .automation import (
    Agent,
    MailboxConfig,
    OAuthCredentials,
    TriggerConfig,
    Workflow,
    WorkflowAction,
)
from .execution import ExecutionRecord, ExecutionStats, ExecutionOutcome, PollResult
from .common import (
    ActionType,
    AgentStatus,
    AgentType,
    ExecutionStatus,
    TriggerType,
    WorkflowStatus,
)

__all__ = [
    # Email models
    "EmailMessage",
    "OutgoingEmail",
    "SendResult",

    # Automation models
    "Agent",
    "MailboxConfig",
    "OAuthCredentials",
    "TriggerConfig",
    "Workflow",
    "WorkflowAction",

    # Execution models
    "ExecutionRecord",
    "ExecutionStats",
    "ExecutionOutcome",
    "PollResult",

    # Common enums
    "ActionType",
    "AgentStatus",
    "AgentType",
    "ExecutionStatus",
    "TriggerType",
    "WorkflowStatus",
]
