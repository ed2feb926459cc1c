"""Run a workflow's ordered action pipeline against one trigger payload."""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from mailflow.core.automation_store import AutomationStore
from mailflow.core.config import get_config
from mailflow.core.exceptions import ActionError, DatabaseError, UnknownActionError, WorkflowNotFoundError
from mailflow.core.execution_ledger import ExecutionLedger
from mailflow.core.record_writer import SqliteRecordWriter
from mailflow.integrations.mailbox import MailboxAdapter
from mailflow.integrations.oauth_client import TokenRefresher
from mailflow.integrations.ollama_client import ReplyGenerator
from mailflow.integrations.webhook_client import WebhookClient
from mailflow.models.automation import OAuthCredentials, Workflow, WorkflowAction, utcnow
from mailflow.models.common import ActionType, ExecutionStatus
from mailflow.models.email import EmailMessage, OutgoingEmail
from mailflow.models.execution import ExecutionOutcome
from mailflow.services.condition_evaluator import evaluate_conditions
from mailflow.services.credentials import ensure_fresh_credentials
from mailflow.services.template import render_value

logger = structlog.get_logger(__name__)

CONDITIONS_NOT_MET = "Conditions not met"


class _RunContext:
    """Per-execution state shared by the actions of one pipeline run."""

    def __init__(self, executor: "ActionPipelineExecutor", workflow: Workflow, payload: Dict[str, Any]):
        self.executor = executor
        self.workflow = workflow
        self.payload = payload
        self._credentials: Optional[OAuthCredentials] = None

    async def credentials(self) -> OAuthCredentials:
        if self._credentials is None:
            store = self.executor.store
            mailbox = await store.get_mailbox_config(self.workflow.agent_id)
            if mailbox is None or mailbox.credentials is None:
                raise ActionError("Email configuration not found or not authorized")
            self._credentials = await ensure_fresh_credentials(
                store, self.executor.token_refresher, mailbox
            )
        return self._credentials

    def email(self, require_id: bool = True) -> EmailMessage:
        data = self.payload.get("email")
        if not isinstance(data, dict):
            raise ActionError("No email data in trigger")
        if require_id and not data.get("id"):
            raise ActionError("No email ID in trigger")
        return EmailMessage.from_payload(data)


class ActionPipelineExecutor:
    """Executes workflows: condition gate, templated actions in order, ledger bookkeeping."""

    def __init__(
        self,
        store: AutomationStore,
        ledger: ExecutionLedger,
        mailbox: MailboxAdapter,
        token_refresher: Optional[TokenRefresher] = None,
        record_writer: Optional[SqliteRecordWriter] = None,
        webhook_client: Optional[WebhookClient] = None,
        reply_generator: Optional[ReplyGenerator] = None,
        strict_templates: bool = False,
    ):
        self.store = store
        self.ledger = ledger
        self.mailbox = mailbox
        self.token_refresher = token_refresher
        self.record_writer = record_writer
        self.webhook_client = webhook_client
        self.reply_generator = reply_generator
        self.strict_templates = strict_templates
        self._handlers: Dict[str, Callable[[Dict[str, Any], _RunContext], Awaitable[Dict[str, Any]]]] = {
            ActionType.SEND_EMAIL.value: self._send_email,
            ActionType.REPLY_TO_EMAIL.value: self._reply_to_email,
            ActionType.FORWARD_EMAIL.value: self._forward_email,
            ActionType.GENERATE_AI_REPLY.value: self._generate_ai_reply,
            ActionType.MARK_AS_READ.value: self._mark_as_read,
            ActionType.ADD_LABEL.value: self._add_label,
            ActionType.SAVE_TO_DATABASE.value: self._save_to_database,
            ActionType.HTTP_REQUEST.value: self._http_request,
        }

    async def execute_workflow(
        self,
        workflow_id: str,
        payload: Optional[Dict[str, Any]] = None,
        raise_on_failure: bool = True,
    ) -> ExecutionOutcome:
        """Execute one workflow against ``payload`` and record the run.

        Exactly one execution record is written per call once the workflow
        is found. A failing action aborts the remaining ones; actions that
        already ran are not undone.

        Args:
            workflow_id: Workflow to run.
            payload: Trigger data; templates and conditions resolve against it.
            raise_on_failure: Re-raise the failing action's error after the
                record is finalized. When False a failed outcome is returned.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
        """
        payload = payload or {}
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})

        record = await self.ledger.create(workflow.agent_id, workflow.id, payload)
        log = logger.bind(workflow_id=workflow.id, execution_id=record.id)
        log.info("Executing workflow", name=workflow.name, actions=len(workflow.actions))

        actions: List[Dict[str, Any]] = []
        try:
            if workflow.conditions and not evaluate_conditions(workflow.conditions, payload):
                finalized = await self.ledger.finalize(
                    record.id,
                    ExecutionStatus.CANCELLED,
                    {"skipped": True, "message": CONDITIONS_NOT_MET},
                )
                log.info("Conditions not met, workflow skipped")
                return ExecutionOutcome(
                    execution_id=record.id,
                    status=finalized.status,
                    skipped=True,
                    duration_ms=finalized.duration_ms,
                )

            context = _RunContext(self, workflow, payload)
            for action in workflow.actions:
                try:
                    result = await self._run_action(action, context)
                except Exception as e:
                    actions.append({"type": action.type, "status": "failed", "error": str(e)})
                    raise
                actions.append({"type": action.type, "status": "success", "result": result})

        except Exception as e:
            error_message = str(e) or e.__class__.__name__
            finalized = await self.ledger.finalize(
                record.id, ExecutionStatus.FAILED, {"actions": actions}, error_message=error_message
            )
            log.error(
                "Workflow execution failed",
                error=error_message,
                completed_actions=sum(1 for a in actions if a["status"] == "success")
            )
            if raise_on_failure:
                raise
            return ExecutionOutcome(
                execution_id=record.id,
                status=finalized.status,
                actions=actions,
                error_message=error_message,
                duration_ms=finalized.duration_ms,
            )

        finalized = await self.ledger.finalize(record.id, ExecutionStatus.SUCCESS, {"actions": actions})
        try:
            await self.store.update_agent(workflow.agent_id, last_run_at=utcnow())
        except DatabaseError as e:
            # The run already succeeded; only the bookkeeping is lost
            log.error("Failed to record agent last run", error=e.message)
        log.info("Workflow executed successfully", duration_ms=finalized.duration_ms)
        return ExecutionOutcome(
            execution_id=record.id,
            status=finalized.status,
            actions=actions,
            duration_ms=finalized.duration_ms,
        )

    async def _run_action(self, action: WorkflowAction, context: _RunContext) -> Dict[str, Any]:
        handler = self._handlers.get(action.type)
        if handler is None:
            raise UnknownActionError(f"Unknown action type: {action.type}", {"type": action.type})
        config = render_value(action.config, context.payload, strict=self.strict_templates)
        logger.debug("Executing action", type=action.type, workflow_id=context.workflow.id)
        return await handler(config, context)

    # Mailbox actions

    async def _send_email(self, config: Dict[str, Any], context: _RunContext) -> Dict[str, Any]:
        if not config.get("to"):
            raise ActionError("send_email requires a recipient")
        body = config.get("body") or ""
        email = OutgoingEmail(
            to=config["to"],
            subject=config.get("subject") or "",
            body=body,
            html=body if config.get("isHtml") else None,
            cc=config.get("cc") or None,
            bcc=config.get("bcc") or None,
        )
        sent = await self.mailbox.send(await context.credentials(), email)
        return {"to": email.to, "subject": email.subject, **sent.to_dict()}

    async def _reply_to_email(self, config: Dict[str, Any], context: _RunContext) -> Dict[str, Any]:
        original = context.email()
        body = config.get("replyBody", config.get("body")) or ""
        sent = await self.mailbox.reply(await context.credentials(), original, body)
        return {"replyTo": original.sender, "originalSubject": original.subject, **sent.to_dict()}

    async def _forward_email(self, config: Dict[str, Any], context: _RunContext) -> Dict[str, Any]:
        original = context.email()
        forward_to = config.get("forwardTo") or config.get("to")
        if not forward_to:
            raise ActionError("forward_email requires forwardTo")
        sent = await self.mailbox.forward(
            await context.credentials(), original, forward_to, note=config.get("note") or ""
        )
        return {"forwardTo": forward_to, "originalSubject": original.subject, **sent.to_dict()}

    async def _generate_ai_reply(self, config: Dict[str, Any], context: _RunContext) -> Dict[str, Any]:
        if self.reply_generator is None:
            raise ActionError("No reply generator configured")
        original = context.email()
        generated = await self.reply_generator.generate_reply(
            original,
            system_prompt=config.get("systemPrompt"),
            temperature=config.get("temperature"),
            max_tokens=config.get("maxTokens"),
            model=config.get("model"),
        )
        sent = await self.mailbox.reply(await context.credentials(), original, generated.reply)
        return {
            "replyTo": original.sender,
            "originalSubject": original.subject,
            "aiModel": generated.model,
            "tokensUsed": generated.tokens_used,
            "generatedReply": generated.reply,
            **sent.to_dict(),
        }

    async def _mark_as_read(self, config: Dict[str, Any], context: _RunContext) -> Dict[str, Any]:
        original = context.email()
        await self.mailbox.mark_read(await context.credentials(), original.id)
        return {"emailId": original.id}

    async def _add_label(self, config: Dict[str, Any], context: _RunContext) -> Dict[str, Any]:
        original = context.email()
        label = config.get("labelId") or config.get("label")
        if not label:
            raise ActionError("add_label requires labelId")
        await self.mailbox.add_label(await context.credentials(), original.id, label)
        return {"emailId": original.id, "labelId": label}

    # Collaborator actions

    async def _save_to_database(self, config: Dict[str, Any], context: _RunContext) -> Dict[str, Any]:
        if self.record_writer is None:
            raise ActionError("No record writer configured")
        table_name = config.get("tableName")
        if not table_name:
            raise ActionError("save_to_database requires tableName")
        row = await self.record_writer.insert(table_name, dict(config.get("columnMapping") or {}))
        return {"tableName": table_name, "insertedRow": row}

    async def _http_request(self, config: Dict[str, Any], context: _RunContext) -> Dict[str, Any]:
        if self.webhook_client is None:
            raise ActionError("No webhook client configured")
        url = config.get("url")
        if not url:
            raise ActionError("http_request requires a url")
        method = (config.get("method") or get_config().webhook.default_method).upper()
        return await self.webhook_client.request(
            method, url, headers=config.get("headers") or {}, body=config.get("body")
        )
