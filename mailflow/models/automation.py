"""Agent, mailbox and workflow data models."""

from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .common import AgentType, AgentStatus, WorkflowStatus, TriggerType


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO string, epoch milliseconds or datetime into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class OAuthCredentials:
    """OAuth credential bundle stored with a mailbox."""
    access_token: str = ""
    refresh_token: str = ""
    expiry: Optional[datetime] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True when the stored expiry has passed. Unknown expiry is treated as valid."""
        if self.expiry is None:
            return False
        return (now or utcnow()) >= self.expiry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry_date": int(self.expiry.timestamp() * 1000) if self.expiry else None,
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["OAuthCredentials"]:
        if not data:
            return None
        expiry = data.get("expiry_date", data.get("expiry"))
        return cls(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or "",
            expiry=parse_timestamp(expiry),
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
        )


@dataclass
class Agent:
    """A configured automation unit bound to one mailbox and its workflows."""
    id: str
    owner_id: str
    name: str
    type: AgentType = AgentType.EMAIL_INBOUND
    status: AgentStatus = AgentStatus.INACTIVE
    description: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == AgentStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "type": self.type.value,
            "status": self.status.value,
            "description": self.description,
            "config": self.config,
            "last_run_at": format_timestamp(self.last_run_at),
            "next_run_at": format_timestamp(self.next_run_at),
            "created_at": format_timestamp(self.created_at),
        }


@dataclass
class MailboxConfig:
    """Mailbox connection and polling cursor for one email agent."""
    agent_id: str
    email_address: str
    provider: str = "gmail"
    credentials: Optional[OAuthCredentials] = None
    filters: Dict[str, Any] = field(default_factory=dict)
    polling_interval: int = 300  # seconds
    last_checked_at: Optional[datetime] = None
    last_email_id: Optional[str] = None

    # Joined from the owning agent when loaded for polling
    agent_name: str = ""
    agent_status: AgentStatus = AgentStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "email_address": self.email_address,
            "provider": self.provider,
            "filters": self.filters,
            "polling_interval": self.polling_interval,
            "last_checked_at": format_timestamp(self.last_checked_at),
            "last_email_id": self.last_email_id,
            "authorized": self.credentials is not None,
        }


@dataclass
class TriggerConfig:
    """Declared trigger: an event type plus an optional filter set."""
    type: str = TriggerType.EMAIL_RECEIVED.value
    filters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "filters": self.filters}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TriggerConfig":
        data = data or {}
        return cls(
            type=data.get("type", TriggerType.EMAIL_RECEIVED.value),
            filters=dict(data.get("filters") or {}),
        )


@dataclass
class WorkflowAction:
    """One step of a workflow's ordered action pipeline."""
    type: str
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "config": self.config}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowAction":
        return cls(type=data["type"], config=dict(data.get("config") or {}))


@dataclass
class Workflow:
    """Trigger + conditions + ordered actions, scoped to one agent."""
    id: str
    agent_id: str
    name: str
    trigger_config: TriggerConfig = field(default_factory=TriggerConfig)
    actions: List[WorkflowAction] = field(default_factory=list)
    conditions: Optional[Dict[str, Any]] = None
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "name": self.name,
            "description": self.description,
            "trigger_config": self.trigger_config.to_dict(),
            "actions": [action.to_dict() for action in self.actions],
            "conditions": self.conditions,
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
