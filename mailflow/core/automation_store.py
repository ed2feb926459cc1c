"""SQLite-backed store for agents, mailbox configurations and workflows."""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from mailflow.core.database import SQLiteDatabase, to_epoch, from_epoch
from mailflow.core.exceptions import AgentNotFoundError, WorkflowNotFoundError
from mailflow.models.automation import (
    Agent,
    MailboxConfig,
    OAuthCredentials,
    TriggerConfig,
    Workflow,
    WorkflowAction,
    utcnow,
)
from mailflow.models.common import AgentStatus, AgentType, WorkflowStatus

logger = structlog.get_logger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS automation_agents (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'inactive',
        config TEXT NOT NULL DEFAULT '{}',
        last_run_at REAL,
        next_run_at REAL,
        created_at REAL NOT NULL,
        updated_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_agent_configs (
        agent_id TEXT PRIMARY KEY REFERENCES automation_agents(id) ON DELETE CASCADE,
        email_address TEXT NOT NULL,
        provider TEXT NOT NULL DEFAULT 'gmail',
        oauth_tokens TEXT,
        filters TEXT,
        polling_interval INTEGER NOT NULL DEFAULT 300,
        last_checked_at REAL,
        last_email_id TEXT,
        updated_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_workflows (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL REFERENCES automation_agents(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        trigger_config TEXT NOT NULL,
        actions TEXT NOT NULL,
        conditions TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        created_at REAL NOT NULL,
        updated_at REAL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_workflows_agent_status
    ON automation_workflows(agent_id, status, created_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_agents_status_type
    ON automation_agents(status, type)
    """,
]

_AGENT_FIELDS = {"name", "description", "config", "status", "last_run_at", "next_run_at"}
_WORKFLOW_FIELDS = {"name", "description", "trigger_config", "actions", "conditions", "status"}
_MAILBOX_FIELDS = {"email_address", "provider", "filters", "polling_interval"}


def _loads(value: Optional[str], default: Any = None) -> Any:
    return json.loads(value) if value else default


class AutomationStore:
    """Persistence for the automation entities the scheduler reads and updates."""

    def __init__(self, database: Optional[SQLiteDatabase] = None):
        self.database = database or SQLiteDatabase()

    async def initialize(self) -> None:
        await self.database.initialize_schema("automation", SCHEMA)

    # Row mapping

    @staticmethod
    def _row_to_agent(row) -> Agent:
        return Agent(
            id=row['id'],
            owner_id=row['owner_id'],
            name=row['name'],
            description=row['description'],
            type=AgentType(row['type']),
            status=AgentStatus(row['status']),
            config=_loads(row['config'], {}),
            last_run_at=from_epoch(row['last_run_at']),
            next_run_at=from_epoch(row['next_run_at']),
            created_at=from_epoch(row['created_at']),
        )

    @staticmethod
    def _row_to_mailbox(row) -> MailboxConfig:
        keys = row.keys()
        mailbox = MailboxConfig(
            agent_id=row['agent_id'],
            email_address=row['email_address'],
            provider=row['provider'],
            credentials=OAuthCredentials.from_dict(_loads(row['oauth_tokens'])),
            filters=_loads(row['filters'], {}),
            polling_interval=row['polling_interval'],
            last_checked_at=from_epoch(row['last_checked_at']),
            last_email_id=row['last_email_id'],
        )
        if 'agent_name' in keys:
            mailbox.agent_name = row['agent_name']
            mailbox.agent_status = AgentStatus(row['agent_status'])
        return mailbox

    @staticmethod
    def _row_to_workflow(row) -> Workflow:
        return Workflow(
            id=row['id'],
            agent_id=row['agent_id'],
            name=row['name'],
            description=row['description'],
            trigger_config=TriggerConfig.from_dict(_loads(row['trigger_config'], {})),
            actions=[WorkflowAction.from_dict(a) for a in _loads(row['actions'], [])],
            conditions=_loads(row['conditions']),
            status=WorkflowStatus(row['status']),
            created_at=from_epoch(row['created_at']),
            updated_at=from_epoch(row['updated_at']),
        )

    # Agents

    async def create_agent(
        self,
        owner_id: str,
        name: str,
        type: AgentType = AgentType.EMAIL_INBOUND,
        status: AgentStatus = AgentStatus.INACTIVE,
        description: str = "",
        config: Optional[Dict[str, Any]] = None,
    ) -> Agent:
        """Create an agent and return it."""
        agent = Agent(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            type=AgentType(type),
            status=AgentStatus(status),
            description=description,
            config=config or {},
        )
        await self.database.execute_write("""
            INSERT INTO automation_agents
            (id, owner_id, name, description, type, status, config, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            agent.id,
            agent.owner_id,
            agent.name,
            agent.description,
            agent.type.value,
            agent.status.value,
            json.dumps(agent.config),
            to_epoch(agent.created_at),
        ))
        logger.info("Agent created", agent_id=agent.id, name=name, type=agent.type.value)
        return agent

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = await self.database.fetch_one(
            "SELECT * FROM automation_agents WHERE id = ?", (agent_id,)
        )
        return self._row_to_agent(row) if row else None

    async def list_agents(
        self,
        owner_id: Optional[str] = None,
        type: Optional[AgentType] = None,
        status: Optional[AgentStatus] = None,
    ) -> List[Agent]:
        query = "SELECT * FROM automation_agents WHERE 1=1"
        params: List[Any] = []

        if owner_id:
            query += " AND owner_id = ?"
            params.append(owner_id)
        if type:
            query += " AND type = ?"
            params.append(AgentType(type).value)
        if status:
            query += " AND status = ?"
            params.append(AgentStatus(status).value)

        query += " ORDER BY created_at DESC"
        rows = await self.database.fetch_all(query, params)
        return [self._row_to_agent(row) for row in rows]

    async def update_agent(self, agent_id: str, **updates: Any) -> Agent:
        """Update mutable agent fields.

        Raises:
            AgentNotFoundError: If the agent does not exist.
        """
        unknown = set(updates) - _AGENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown agent fields: {sorted(unknown)}")

        fields = []
        values: List[Any] = []
        for key, value in updates.items():
            if key == "config":
                value = json.dumps(value or {})
            elif key == "status":
                value = AgentStatus(value).value
            elif key in ("last_run_at", "next_run_at"):
                value = to_epoch(value)
            fields.append(f"{key} = ?")
            values.append(value)

        fields.append("updated_at = ?")
        values.append(to_epoch(utcnow()))
        values.append(agent_id)

        changed = await self.database.execute_write(
            f"UPDATE automation_agents SET {', '.join(fields)} WHERE id = ?", values
        )
        if not changed:
            raise AgentNotFoundError(f"Agent not found: {agent_id}", {"agent_id": agent_id})
        return await self.get_agent(agent_id)

    async def set_agent_status(self, agent_id: str, status: AgentStatus) -> Agent:
        agent = await self.update_agent(agent_id, status=status)
        logger.info("Agent status changed", agent_id=agent_id, status=agent.status.value)
        return agent

    async def delete_agent(self, agent_id: str) -> bool:
        changed = await self.database.execute_write(
            "DELETE FROM automation_agents WHERE id = ?", (agent_id,)
        )
        return changed > 0

    # Mailbox configs

    async def create_mailbox_config(
        self,
        agent_id: str,
        email_address: str,
        credentials: Optional[OAuthCredentials] = None,
        filters: Optional[Dict[str, Any]] = None,
        polling_interval: int = 300,
        provider: str = "gmail",
    ) -> MailboxConfig:
        await self.database.execute_write("""
            INSERT INTO email_agent_configs
            (agent_id, email_address, provider, oauth_tokens, filters, polling_interval, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            agent_id,
            email_address,
            provider,
            json.dumps(credentials.to_dict()) if credentials else None,
            json.dumps(filters) if filters else None,
            polling_interval,
            to_epoch(utcnow()),
        ))
        logger.debug("Mailbox config created", agent_id=agent_id, email_address=email_address)
        return await self.get_mailbox_config(agent_id)

    async def get_mailbox_config(self, agent_id: str) -> Optional[MailboxConfig]:
        row = await self.database.fetch_one("""
            SELECT ec.*, a.name AS agent_name, a.status AS agent_status
            FROM email_agent_configs ec
            JOIN automation_agents a ON ec.agent_id = a.id
            WHERE ec.agent_id = ?
        """, (agent_id,))
        return self._row_to_mailbox(row) if row else None

    async def update_mailbox_config(self, agent_id: str, **updates: Any) -> MailboxConfig:
        unknown = set(updates) - _MAILBOX_FIELDS
        if unknown:
            raise ValueError(f"Unknown mailbox fields: {sorted(unknown)}")

        fields = []
        values: List[Any] = []
        for key, value in updates.items():
            if key == "filters":
                value = json.dumps(value) if value else None
            fields.append(f"{key} = ?")
            values.append(value)
        fields.append("updated_at = ?")
        values.append(to_epoch(utcnow()))
        values.append(agent_id)

        changed = await self.database.execute_write(
            f"UPDATE email_agent_configs SET {', '.join(fields)} WHERE agent_id = ?", values
        )
        if not changed:
            raise AgentNotFoundError(f"Mailbox config not found: {agent_id}", {"agent_id": agent_id})
        return await self.get_mailbox_config(agent_id)

    async def get_mailboxes_due(self, now: Optional[datetime] = None) -> List[MailboxConfig]:
        """Mailboxes of active inbound agents whose polling interval has elapsed.

        Never-polled mailboxes come first, then the oldest cursor.
        """
        now_epoch = to_epoch(now or utcnow())
        rows = await self.database.fetch_all("""
            SELECT ec.*, a.name AS agent_name, a.status AS agent_status
            FROM email_agent_configs ec
            JOIN automation_agents a ON ec.agent_id = a.id
            WHERE a.status = ?
              AND a.type = ?
              AND (ec.last_checked_at IS NULL
                   OR ec.last_checked_at + ec.polling_interval <= ?)
            ORDER BY ec.last_checked_at IS NOT NULL, ec.last_checked_at ASC
        """, (AgentStatus.ACTIVE.value, AgentType.EMAIL_INBOUND.value, now_epoch))
        return [self._row_to_mailbox(row) for row in rows]

    async def update_cursor(
        self,
        agent_id: str,
        checked_at: datetime,
        last_email_id: Optional[str] = None,
    ) -> None:
        """Advance the polling cursor. ``last_checked_at`` never moves backwards."""
        await self.database.execute_write("""
            UPDATE email_agent_configs
            SET last_checked_at = MAX(COALESCE(last_checked_at, 0), ?),
                last_email_id = COALESCE(?, last_email_id),
                updated_at = ?
            WHERE agent_id = ?
        """, (to_epoch(checked_at), last_email_id, to_epoch(utcnow()), agent_id))
        logger.debug(
            "Cursor advanced",
            agent_id=agent_id,
            last_checked_at=checked_at.isoformat(),
            last_email_id=last_email_id
        )

    async def update_credentials(self, agent_id: str, credentials: OAuthCredentials) -> None:
        await self.database.execute_write("""
            UPDATE email_agent_configs SET oauth_tokens = ?, updated_at = ? WHERE agent_id = ?
        """, (json.dumps(credentials.to_dict()), to_epoch(utcnow()), agent_id))

    # Workflows

    async def create_workflow(
        self,
        agent_id: str,
        name: str,
        trigger_config: TriggerConfig,
        actions: List[WorkflowAction],
        conditions: Optional[Dict[str, Any]] = None,
        status: WorkflowStatus = WorkflowStatus.ACTIVE,
        description: str = "",
    ) -> Workflow:
        workflow = Workflow(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            name=name,
            description=description,
            trigger_config=trigger_config,
            actions=list(actions),
            conditions=conditions,
            status=WorkflowStatus(status),
        )
        await self.database.execute_write("""
            INSERT INTO automation_workflows
            (id, agent_id, name, description, trigger_config, actions, conditions, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            workflow.id,
            workflow.agent_id,
            workflow.name,
            workflow.description,
            json.dumps(workflow.trigger_config.to_dict()),
            json.dumps([a.to_dict() for a in workflow.actions]),
            json.dumps(conditions) if conditions else None,
            workflow.status.value,
            to_epoch(workflow.created_at),
        ))
        logger.info("Workflow created", workflow_id=workflow.id, agent_id=agent_id, name=name)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        row = await self.database.fetch_one(
            "SELECT * FROM automation_workflows WHERE id = ?", (workflow_id,)
        )
        return self._row_to_workflow(row) if row else None

    async def list_workflows(self, agent_id: str) -> List[Workflow]:
        rows = await self.database.fetch_all("""
            SELECT * FROM automation_workflows WHERE agent_id = ? ORDER BY created_at DESC, rowid DESC
        """, (agent_id,))
        return [self._row_to_workflow(row) for row in rows]

    async def get_active_workflows(self, agent_id: str) -> List[Workflow]:
        """Active workflows of an active agent, newest first."""
        rows = await self.database.fetch_all("""
            SELECT w.* FROM automation_workflows w
            JOIN automation_agents a ON w.agent_id = a.id
            WHERE w.agent_id = ? AND w.status = ? AND a.status = ?
            ORDER BY w.created_at DESC, w.rowid DESC
        """, (agent_id, WorkflowStatus.ACTIVE.value, AgentStatus.ACTIVE.value))
        return [self._row_to_workflow(row) for row in rows]

    async def update_workflow(self, workflow_id: str, **updates: Any) -> Workflow:
        unknown = set(updates) - _WORKFLOW_FIELDS
        if unknown:
            raise ValueError(f"Unknown workflow fields: {sorted(unknown)}")

        fields = []
        values: List[Any] = []
        for key, value in updates.items():
            if key == "trigger_config":
                value = json.dumps(value.to_dict())
            elif key == "actions":
                value = json.dumps([a.to_dict() for a in value])
            elif key == "conditions":
                value = json.dumps(value) if value else None
            elif key == "status":
                value = WorkflowStatus(value).value
            fields.append(f"{key} = ?")
            values.append(value)
        fields.append("updated_at = ?")
        values.append(to_epoch(utcnow()))
        values.append(workflow_id)

        changed = await self.database.execute_write(
            f"UPDATE automation_workflows SET {', '.join(fields)} WHERE id = ?", values
        )
        if not changed:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})
        return await self.get_workflow(workflow_id)

    async def delete_workflow(self, workflow_id: str) -> bool:
        changed = await self.database.execute_write(
            "DELETE FROM automation_workflows WHERE id = ?", (workflow_id,)
        )
        return changed > 0
