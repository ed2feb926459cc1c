"""Automation service: the surface used by management front-ends."""

from typing import Any, Dict, List, Optional, Union

import structlog

from mailflow.core.automation_store import AutomationStore
from mailflow.core.config import get_config
from mailflow.core.database import SQLiteDatabase
from mailflow.core.exceptions import AgentNotFoundError, ValidationError, WorkflowNotFoundError
from mailflow.core.execution_ledger import ExecutionLedger
from mailflow.core.record_writer import SqliteRecordWriter
from mailflow.integrations.gmail_client import GmailMailboxAdapter
from mailflow.integrations.mailbox import MailboxAdapter
from mailflow.integrations.oauth_client import GoogleTokenRefresher, TokenRefresher
from mailflow.integrations.ollama_client import OllamaReplyGenerator, ReplyGenerator
from mailflow.integrations.webhook_client import AiohttpWebhookClient, WebhookClient
from mailflow.models.automation import (
    Agent,
    MailboxConfig,
    OAuthCredentials,
    TriggerConfig,
    Workflow,
    WorkflowAction,
)
from mailflow.models.common import ActionType, AgentStatus, AgentType, WorkflowStatus
from mailflow.models.execution import ExecutionOutcome, ExecutionStats, PollResult
from mailflow.services.action_executor import ActionPipelineExecutor
from mailflow.services.condition_evaluator import validate_conditions
from mailflow.services.email_poller import EmailPoller
from mailflow.services.scheduler import Scheduler
from mailflow.services.trigger_matcher import CompiledTrigger, TriggerMatcher

logger = structlog.get_logger(__name__)

_ACTION_TYPES = {action_type.value for action_type in ActionType}


def _as_trigger(value: Union[TriggerConfig, Dict[str, Any], None]) -> TriggerConfig:
    if isinstance(value, TriggerConfig):
        return value
    return TriggerConfig.from_dict(value)


def _as_actions(values: List[Union[WorkflowAction, Dict[str, Any]]]) -> List[WorkflowAction]:
    actions = []
    for value in values or []:
        action = value if isinstance(value, WorkflowAction) else WorkflowAction.from_dict(value)
        if action.type not in _ACTION_TYPES:
            raise ValidationError(f"Unknown action type: {action.type}", {"type": action.type})
        actions.append(action)
    return actions


class AutomationService:
    """Wires the store, ledger, executor, poller and scheduler around injectable collaborators."""

    def __init__(
        self,
        database: Optional[SQLiteDatabase] = None,
        mailbox: Optional[MailboxAdapter] = None,
        token_refresher: Optional[TokenRefresher] = None,
        webhook_client: Optional[WebhookClient] = None,
        reply_generator: Optional[ReplyGenerator] = None,
        record_writer: Optional[SqliteRecordWriter] = None,
    ):
        self.config = get_config()
        self.database = database or SQLiteDatabase()
        self.store = AutomationStore(self.database)
        self.ledger = ExecutionLedger(self.database)
        self.mailbox = mailbox or GmailMailboxAdapter()
        self.token_refresher = token_refresher or GoogleTokenRefresher()
        self.matcher = TriggerMatcher()
        self.executor = ActionPipelineExecutor(
            store=self.store,
            ledger=self.ledger,
            mailbox=self.mailbox,
            token_refresher=self.token_refresher,
            record_writer=record_writer or SqliteRecordWriter(self.database),
            webhook_client=webhook_client or AiohttpWebhookClient(),
            reply_generator=reply_generator or OllamaReplyGenerator(),
        )
        self.poller = EmailPoller(
            store=self.store,
            executor=self.executor,
            mailbox=self.mailbox,
            token_refresher=self.token_refresher,
            matcher=self.matcher,
            max_messages=self.config.gmail.max_messages_per_poll,
        )
        self.scheduler = Scheduler(self.store, self.poller)
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.store.initialize()
        await self.ledger.initialize()
        self._initialized = True
        logger.info("Automation service initialized", db_path=self.database.db_path)

    # Agents

    async def create_agent(
        self,
        owner_id: str,
        name: str,
        type: AgentType = AgentType.EMAIL_INBOUND,
        description: str = "",
        config: Optional[Dict[str, Any]] = None,
        status: AgentStatus = AgentStatus.INACTIVE,
        mailbox: Optional[Dict[str, Any]] = None,
    ) -> Agent:
        """Create an agent, optionally with its mailbox configuration.

        ``mailbox`` takes ``email_address`` plus optional ``credentials``
        (token dict), ``filters`` and ``polling_interval``.
        """
        if not name:
            raise ValidationError("Agent name is required")
        agent = await self.store.create_agent(
            owner_id=owner_id,
            name=name,
            type=type,
            status=status,
            description=description,
            config=config,
        )
        if mailbox:
            await self.connect_mailbox(
                agent.id,
                email_address=mailbox["email_address"],
                credentials=OAuthCredentials.from_dict(mailbox.get("credentials")),
                filters=mailbox.get("filters"),
                polling_interval=mailbox.get("polling_interval"),
            )
        return agent

    async def get_agent(self, agent_id: str) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent not found: {agent_id}", {"agent_id": agent_id})
        return agent

    async def list_agents(self, owner_id: Optional[str] = None) -> List[Agent]:
        return await self.store.list_agents(owner_id=owner_id)

    async def update_agent(self, agent_id: str, **updates: Any) -> Agent:
        return await self.store.update_agent(agent_id, **updates)

    async def delete_agent(self, agent_id: str) -> bool:
        for workflow in await self.store.list_workflows(agent_id):
            self.matcher.forget(workflow.id)
        deleted = await self.store.delete_agent(agent_id)
        if deleted:
            logger.info("Agent deleted", agent_id=agent_id)
        return deleted

    async def toggle_agent_status(self, agent_id: str) -> Agent:
        """Switch an agent between active and inactive. Agents in error become active."""
        agent = await self.get_agent(agent_id)
        status = AgentStatus.INACTIVE if agent.is_active else AgentStatus.ACTIVE
        return await self.store.set_agent_status(agent_id, status)

    async def connect_mailbox(
        self,
        agent_id: str,
        email_address: str,
        credentials: Optional[OAuthCredentials] = None,
        filters: Optional[Dict[str, Any]] = None,
        polling_interval: Optional[int] = None,
    ) -> MailboxConfig:
        """Create or update the agent's mailbox. New credentials clear an auth error."""
        agent = await self.get_agent(agent_id)
        interval = polling_interval or self.config.scheduler.default_polling_interval
        existing = await self.store.get_mailbox_config(agent_id)

        if existing is None:
            mailbox = await self.store.create_mailbox_config(
                agent_id,
                email_address=email_address,
                credentials=credentials,
                filters=filters,
                polling_interval=interval,
            )
        else:
            updates: Dict[str, Any] = {"email_address": email_address, "polling_interval": interval}
            if filters is not None:
                updates["filters"] = filters
            await self.store.update_mailbox_config(agent_id, **updates)
            if credentials is not None:
                await self.store.update_credentials(agent_id, credentials)
            mailbox = await self.store.get_mailbox_config(agent_id)

        if credentials is not None and agent.status == AgentStatus.ERROR:
            await self.store.set_agent_status(agent_id, AgentStatus.ACTIVE)
        return mailbox

    # Workflows

    def _validate_workflow(self, trigger: TriggerConfig, conditions: Optional[Dict[str, Any]]) -> None:
        CompiledTrigger.compile(trigger)
        validate_conditions(conditions)

    async def create_workflow(
        self,
        agent_id: str,
        name: str,
        trigger_config: Union[TriggerConfig, Dict[str, Any], None] = None,
        actions: Optional[List[Union[WorkflowAction, Dict[str, Any]]]] = None,
        conditions: Optional[Dict[str, Any]] = None,
        status: WorkflowStatus = WorkflowStatus.ACTIVE,
        description: str = "",
    ) -> Workflow:
        """Create a workflow after compiling its trigger patterns and conditions.

        Raises:
            AgentNotFoundError: If the agent does not exist.
            ValidationError: On an unknown action type or an invalid pattern.
        """
        await self.get_agent(agent_id)
        if not name:
            raise ValidationError("Workflow name is required")
        trigger = _as_trigger(trigger_config)
        workflow_actions = _as_actions(actions or [])
        self._validate_workflow(trigger, conditions)

        return await self.store.create_workflow(
            agent_id=agent_id,
            name=name,
            trigger_config=trigger,
            actions=workflow_actions,
            conditions=conditions,
            status=status,
            description=description,
        )

    async def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})
        return workflow

    async def list_workflows(self, agent_id: str) -> List[Workflow]:
        return await self.store.list_workflows(agent_id)

    async def update_workflow(self, workflow_id: str, **updates: Any) -> Workflow:
        current = await self.get_workflow(workflow_id)
        if "trigger_config" in updates:
            updates["trigger_config"] = _as_trigger(updates["trigger_config"])
        if "actions" in updates:
            updates["actions"] = _as_actions(updates["actions"])
        self._validate_workflow(
            updates.get("trigger_config", current.trigger_config),
            updates.get("conditions", current.conditions),
        )
        workflow = await self.store.update_workflow(workflow_id, **updates)
        self.matcher.forget(workflow_id)
        logger.info("Workflow updated", workflow_id=workflow_id, fields=sorted(updates))
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        self.matcher.forget(workflow_id)
        return await self.store.delete_workflow(workflow_id)

    # Execution

    async def execute_workflow_now(
        self,
        workflow_id: str,
        payload: Optional[Dict[str, Any]] = None,
        raise_on_failure: bool = False,
    ) -> ExecutionOutcome:
        return await self.executor.execute_workflow(workflow_id, payload or {}, raise_on_failure=raise_on_failure)

    async def poll_agent_now(self, agent_id: str) -> PollResult:
        return await self.poller.poll_agent_now(agent_id)

    async def get_execution_history(self, agent_id: str, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        """Paginated execution history of an agent, most recent first."""
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        executions = await self.ledger.list_by_agent(agent_id, limit=limit, offset=offset)
        total = await self.ledger.count(agent_id=agent_id)
        return {
            "executions": executions,
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(executions) < total,
        }

    async def get_execution_stats(
        self,
        agent_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> ExecutionStats:
        return await self.ledger.get_stats(agent_id=agent_id, workflow_id=workflow_id)

    # Scheduling

    def start_polling(self, interval_seconds: Optional[float] = None) -> bool:
        return self.scheduler.start(interval_seconds or self.config.scheduler.interval_seconds)

    async def stop_polling(self, wait: bool = True) -> None:
        self.scheduler.stop()
        if wait:
            await self.scheduler.wait_for_cycles()


# Global service instance
_automation_service: Optional[AutomationService] = None


async def get_automation_service() -> AutomationService:
    """Get the global, initialized automation service."""
    global _automation_service
    if _automation_service is None:
        _automation_service = AutomationService()
        await _automation_service.initialize()
    return _automation_service
