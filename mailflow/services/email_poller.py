"""Per-agent poll routine: fetch new messages and run matching workflows."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from mailflow.core.automation_store import AutomationStore
from mailflow.core.config import get_config
from mailflow.core.exceptions import (
    AgentNotFoundError,
    AuthorizationError,
    ConfigurationError,
    ProviderError,
    ValidationError,
)
from mailflow.integrations.mailbox import MailboxAdapter
from mailflow.integrations.oauth_client import TokenRefresher
from mailflow.models.automation import MailboxConfig, Workflow, utcnow
from mailflow.models.common import AgentStatus, AgentType, TriggerType
from mailflow.models.email import EmailMessage
from mailflow.models.execution import PollResult
from mailflow.services.action_executor import ActionPipelineExecutor
from mailflow.services.credentials import ensure_fresh_credentials
from mailflow.services.trigger_matcher import TriggerMatcher

logger = structlog.get_logger(__name__)


def build_trigger_payload(message: EmailMessage, mailbox: MailboxConfig) -> Dict[str, Any]:
    return {
        "email": message.to_payload(),
        "agent": {
            "id": mailbox.agent_id,
            "name": mailbox.agent_name,
            "type": AgentType.EMAIL_INBOUND.value,
        },
    }


def newest_message_id(messages: List[EmailMessage]) -> Optional[str]:
    """Id of the message with the latest provider timestamp; list order is not trusted."""
    if not messages:
        return None
    return max(messages, key=lambda message: message.internal_date).id


class EmailPoller:
    """Polls one agent's mailbox and dispatches each message to its matching workflows.

    Polls of the same agent are serialized by a per-agent lock, so a manual
    "poll now" cannot interleave with a scheduled poll in this process.
    """

    def __init__(
        self,
        store: AutomationStore,
        executor: ActionPipelineExecutor,
        mailbox: MailboxAdapter,
        token_refresher: Optional[TokenRefresher] = None,
        matcher: Optional[TriggerMatcher] = None,
        max_messages: Optional[int] = None,
    ):
        self.store = store
        self.executor = executor
        self.mailbox = mailbox
        self.token_refresher = token_refresher
        self.matcher = matcher or TriggerMatcher()
        self.max_messages = max_messages or get_config().gmail.max_messages_per_poll
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, agent_id: str) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = self._locks[agent_id] = asyncio.Lock()
        return lock

    async def poll_agent_now(self, agent_id: str) -> PollResult:
        """Poll one agent immediately, regardless of its polling interval.

        Raises:
            AgentNotFoundError: If the agent does not exist.
            ConfigurationError: If the agent has no mailbox configuration.
        """
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent not found: {agent_id}", {"agent_id": agent_id})
        mailbox = await self.store.get_mailbox_config(agent_id)
        if mailbox is None:
            raise ConfigurationError(
                f"Email configuration not found for agent {agent_id}", {"agent_id": agent_id}
            )
        return await self.poll_agent(mailbox)

    async def poll_agent(self, mailbox: MailboxConfig, now: Optional[datetime] = None) -> PollResult:
        async with self._lock_for(mailbox.agent_id):
            return await self._poll(mailbox, now or utcnow())

    async def _poll(self, mailbox: MailboxConfig, now: datetime) -> PollResult:
        agent_id = mailbox.agent_id
        log = logger.bind(agent_id=agent_id, agent_name=mailbox.agent_name)
        result = PollResult(agent_id=agent_id)
        log.info("Polling mailbox", email_address=mailbox.email_address)

        workflows = await self.store.get_active_workflows(agent_id)
        if not workflows:
            log.info("No active workflows for agent")
            await self.store.update_cursor(agent_id, now)
            result.status = "no_workflows"
            return result

        try:
            credentials = await ensure_fresh_credentials(self.store, self.token_refresher, mailbox, now)
            messages = await self.mailbox.list_messages(
                credentials, self._build_filters(mailbox), max_results=self.max_messages
            )
        except AuthorizationError as e:
            await self._handle_authorization_failure(mailbox, e)
            result.status = "unauthorized"
            result.error = e.message
            return result
        except ProviderError as e:
            # Transient provider trouble: the next scheduled tick tries again
            log.warning("Mailbox fetch failed", error=e.message, error_type=type(e).__name__)
            result.status = "provider_error"
            result.error = e.message
            return result

        if not messages:
            log.info("No new emails")
            await self.store.update_cursor(agent_id, now)
            result.status = "no_messages"
            return result

        log.info("Found new emails", count=len(messages))
        result.messages = len(messages)
        compiled = self._compile_triggers(workflows)

        for message in messages:
            payload = build_trigger_payload(message, mailbox)
            for workflow in compiled:
                try:
                    if not self.matcher.should_trigger(workflow, message, TriggerType.EMAIL_RECEIVED.value):
                        continue
                    log.info("Triggering workflow", workflow_id=workflow.id, message_id=message.id)
                    result.executions += 1
                    await self.executor.execute_workflow(workflow.id, payload)
                except Exception as e:
                    result.failures += 1
                    log.error(
                        "Error executing workflow",
                        workflow_id=workflow.id,
                        message_id=message.id,
                        error=str(e)
                    )

        result.last_email_id = newest_message_id(messages)
        checked_at = self._cursor_time(mailbox, messages, now)
        if checked_at is not None:
            await self.store.update_cursor(agent_id, checked_at, result.last_email_id)
        log.info(
            "Mailbox polled",
            messages=result.messages,
            executions=result.executions,
            failures=result.failures
        )
        return result

    def _cursor_time(self, mailbox: MailboxConfig, messages: List[EmailMessage], now: datetime) -> Optional[datetime]:
        """Where ``last_checked_at`` may move after processing ``messages``.

        A listing cut off at ``max_messages`` may have left older matches
        unfetched. Those sit behind any newer cursor, so the cursor stays put
        and the mailbox remains due until a poll sees the whole backlog.
        """
        if len(messages) < self.max_messages:
            return now
        logger.warning(
            "Message listing hit the per-poll limit, cursor not advanced",
            agent_id=mailbox.agent_id,
            max_messages=self.max_messages
        )
        return mailbox.last_checked_at

    def _build_filters(self, mailbox: MailboxConfig) -> Dict[str, Any]:
        filters = dict(mailbox.filters or {})
        filters["isUnread"] = True
        if mailbox.last_checked_at is not None:
            filters["after"] = int(mailbox.last_checked_at.timestamp())
        return filters

    def _compile_triggers(self, workflows: List[Workflow]) -> List[Workflow]:
        """Compile every trigger once per poll; workflows with invalid patterns are left out."""
        usable = []
        for workflow in workflows:
            try:
                self.matcher.compile(workflow)
            except ValidationError as e:
                logger.error("Workflow trigger is invalid", workflow_id=workflow.id, error=e.message)
                continue
            usable.append(workflow)
        return usable

    async def _handle_authorization_failure(self, mailbox: MailboxConfig, error: AuthorizationError) -> None:
        logger.error(
            "Mailbox authorization failed, agent needs re-authorization",
            agent_id=mailbox.agent_id,
            agent_name=mailbox.agent_name,
            error=error.message
        )
        await self.store.set_agent_status(mailbox.agent_id, AgentStatus.ERROR)
