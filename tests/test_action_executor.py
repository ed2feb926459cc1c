"""Tests for the workflow action pipeline executor."""

from unittest.mock import AsyncMock, patch

import pytest

from mailflow.core.exceptions import (
    ActionError,
    DatabaseError,
    InvalidCredentialsError,
    TemplateError,
    UnknownActionError,
    WebhookError,
    WorkflowNotFoundError,
)
from mailflow.models.automation import MailboxConfig, TriggerConfig, WorkflowAction
from mailflow.models.common import ExecutionStatus
from mailflow.services.action_executor import CONDITIONS_NOT_MET
from mailflow.services.email_poller import build_trigger_payload
from tests.fakes import (
    FakeTokenRefresher,
    create_email_agent,
    expired_credentials,
    make_message,
)


async def _workflow(store, agent_id, actions, conditions=None):
    return await store.create_workflow(
        agent_id=agent_id,
        name="Support auto-reply",
        trigger_config=TriggerConfig(),
        actions=[WorkflowAction(type=t, config=c) for t, c in actions],
        conditions=conditions,
    )


def _payload(agent, message=None):
    mailbox = MailboxConfig(agent_id=agent.id, email_address="support@example.com", agent_name=agent.name)
    return build_trigger_payload(message or make_message(), mailbox)


# ============================================================================
# Pipeline semantics
# ============================================================================

class TestPipeline:

    @pytest.mark.asyncio
    async def test_actions_run_in_order(self, store, ledger, executor, mailbox):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [
            ("reply_to_email", {"replyBody": "Hi {{email.from}}"}),
            ("mark_as_read", {}),
            ("add_label", {"labelId": "Label_1"}),
        ])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent))

        assert outcome.status == ExecutionStatus.SUCCESS
        assert [a["type"] for a in outcome.actions] == ["reply_to_email", "mark_as_read", "add_label"]
        assert mailbox.sent[0].body.startswith("Hi bob@customer.com")
        assert mailbox.read == ["msg-1"]
        assert mailbox.labelled == [("msg-1", "Label_1")]

        record = await ledger.get(outcome.execution_id)
        assert record.status == ExecutionStatus.SUCCESS
        assert [a["status"] for a in record.execution_data["actions"]] == ["success"] * 3
        assert record.trigger_data["email"]["id"] == "msg-1"

    @pytest.mark.asyncio
    async def test_failure_aborts_remaining_actions(self, store, ledger, executor, mailbox):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [
            ("mark_as_read", {}),
            ("send_email", {"to": "ops@example.com", "subject": "Alert"}),
            ("add_label", {"labelId": "Label_1"}),
        ])
        mailbox.send_error = ActionError("smtp down")

        with pytest.raises(ActionError):
            await executor.execute_workflow(workflow.id, _payload(agent))

        # The first action already happened and is not undone
        assert mailbox.read == ["msg-1"]
        assert mailbox.labelled == []

        [record] = await ledger.list_by_workflow(workflow.id)
        assert record.status == ExecutionStatus.FAILED
        assert record.error_message == "smtp down"
        assert [a["status"] for a in record.execution_data["actions"]] == ["success", "failed"]
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_failure_returned_when_not_raising(self, store, executor, mailbox):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [("send_email", {"to": "a@b.com"})])
        mailbox.send_error = ActionError("smtp down")

        outcome = await executor.execute_workflow(workflow.id, _payload(agent), raise_on_failure=False)

        assert outcome.status == ExecutionStatus.FAILED
        assert not outcome.success
        assert outcome.error_message == "smtp down"

    @pytest.mark.asyncio
    async def test_unknown_action_fails_execution(self, store, ledger, executor):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [("teleport", {})])

        with pytest.raises(UnknownActionError):
            await executor.execute_workflow(workflow.id, _payload(agent))

        [record] = await ledger.list_by_workflow(workflow.id)
        assert record.status == ExecutionStatus.FAILED
        assert "teleport" in record.error_message

    @pytest.mark.asyncio
    async def test_missing_workflow_writes_no_record(self, executor, ledger):
        with pytest.raises(WorkflowNotFoundError):
            await executor.execute_workflow("nope", {})
        assert await ledger.count() == 0

    @pytest.mark.asyncio
    async def test_success_updates_last_run(self, store, executor):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [("mark_as_read", {})])

        await executor.execute_workflow(workflow.id, _payload(agent))

        assert (await store.get_agent(agent.id)).last_run_at is not None

    @pytest.mark.asyncio
    async def test_last_run_write_failure_keeps_success(self, store, ledger, executor):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [("mark_as_read", {})])

        with patch.object(store, "update_agent", AsyncMock(side_effect=DatabaseError("disk I/O error"))):
            outcome = await executor.execute_workflow(workflow.id, _payload(agent))

        assert outcome.status == ExecutionStatus.SUCCESS
        assert (await ledger.get(outcome.execution_id)).status == ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_empty_pipeline_succeeds(self, store, executor):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent))

        assert outcome.status == ExecutionStatus.SUCCESS
        assert outcome.actions == []


# ============================================================================
# Conditions
# ============================================================================

class TestConditionGate:

    @pytest.mark.asyncio
    async def test_unmet_conditions_cancel_without_actions(self, store, ledger, executor, mailbox):
        agent = await create_email_agent(store)
        conditions = {
            "operator": "AND",
            "rules": [{"field": "email.subject", "operator": "contains", "value": "invoice"}],
        }
        workflow = await _workflow(store, agent.id, [("mark_as_read", {})], conditions)

        outcome = await executor.execute_workflow(workflow.id, _payload(agent))

        assert outcome.skipped
        assert outcome.status == ExecutionStatus.CANCELLED
        assert mailbox.read == []

        record = await ledger.get(outcome.execution_id)
        assert record.execution_data == {"skipped": True, "message": CONDITIONS_NOT_MET}
        assert (await store.get_agent(agent.id)).last_run_at is None

    @pytest.mark.asyncio
    async def test_met_conditions_run_actions(self, store, executor, mailbox):
        agent = await create_email_agent(store)
        conditions = {
            "operator": "OR",
            "rules": [
                {"field": "email.subject", "operator": "contains", "value": "invoice"},
                {"field": "email.from", "operator": "ends_with", "value": "@customer.com"},
            ],
        }
        workflow = await _workflow(store, agent.id, [("mark_as_read", {})], conditions)

        outcome = await executor.execute_workflow(workflow.id, _payload(agent))

        assert outcome.status == ExecutionStatus.SUCCESS
        assert mailbox.read == ["msg-1"]


# ============================================================================
# Templates and credentials
# ============================================================================

class TestTemplatesAndCredentials:

    @pytest.mark.asyncio
    async def test_missing_template_path_renders_empty(self, store, executor, mailbox):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [
            ("send_email", {"to": "ops@example.com", "subject": "[{{email.priority}}] {{email.subject}}"}),
        ])

        await executor.execute_workflow(workflow.id, _payload(agent))

        assert mailbox.sent[0].subject == "[] Order status"

    @pytest.mark.asyncio
    async def test_strict_templates_fail_on_missing_path(self, store, ledger, executor, mailbox):
        executor.strict_templates = True
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [
            ("send_email", {"to": "ops@example.com", "subject": "[{{email.priority}}] {{email.subject}}"}),
        ])

        with pytest.raises(TemplateError):
            await executor.execute_workflow(workflow.id, _payload(agent))

        assert mailbox.sent == []
        [record] = await ledger.list_by_workflow(workflow.id)
        assert record.status == ExecutionStatus.FAILED
        assert record.error_message == "Unresolved template path: email.priority"

    @pytest.mark.asyncio
    async def test_missing_email_in_payload(self, store, executor):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [("mark_as_read", {})])

        outcome = await executor.execute_workflow(workflow.id, {"agent": {"id": agent.id}}, raise_on_failure=False)

        assert outcome.error_message == "No email data in trigger"

    @pytest.mark.asyncio
    async def test_unauthorized_mailbox(self, store, executor):
        agent = await store.create_agent(owner_id="owner-1", name="No mailbox")
        workflow = await _workflow(store, agent.id, [("mark_as_read", {})])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent), raise_on_failure=False)

        assert outcome.error_message == "Email configuration not found or not authorized"

    @pytest.mark.asyncio
    async def test_expired_credentials_refreshed_once(self, store, executor, mailbox, refresher):
        agent = await create_email_agent(store, credentials=expired_credentials())
        workflow = await _workflow(store, agent.id, [("mark_as_read", {}), ("add_label", {"label": "X"})])

        await executor.execute_workflow(workflow.id, _payload(agent))

        assert refresher.calls == ["refresh-token"]
        stored = (await store.get_mailbox_config(agent.id)).credentials
        assert stored.access_token == "fresh-token"
        assert stored.refresh_token == "refresh-token"

    @pytest.mark.asyncio
    async def test_rejected_refresh_fails_execution(self, store, ledger, executor):
        executor.token_refresher = FakeTokenRefresher(error=InvalidCredentialsError("revoked"))
        agent = await create_email_agent(store, credentials=expired_credentials())
        workflow = await _workflow(store, agent.id, [("mark_as_read", {})])

        with pytest.raises(InvalidCredentialsError):
            await executor.execute_workflow(workflow.id, _payload(agent))

        [record] = await ledger.list_by_workflow(workflow.id)
        assert record.status == ExecutionStatus.FAILED


# ============================================================================
# Action handlers
# ============================================================================

class TestActions:

    @pytest.mark.asyncio
    async def test_send_email_requires_recipient(self, store, executor):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [("send_email", {"to": "{{email.nobody}}"})])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent), raise_on_failure=False)

        assert outcome.status == ExecutionStatus.FAILED
        assert "recipient" in outcome.error_message

    @pytest.mark.asyncio
    async def test_send_html_email(self, store, executor, mailbox):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [
            ("send_email", {"to": "ops@example.com", "body": "<b>{{email.subject}}</b>", "isHtml": True}),
        ])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent))

        assert mailbox.sent[0].html == "<b>Order status</b>"
        assert outcome.actions[0]["result"]["to"] == "ops@example.com"
        assert outcome.actions[0]["result"]["messageId"] == "sent-1"

    @pytest.mark.asyncio
    async def test_reply_threads_and_prefixes(self, store, executor, mailbox):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [("reply_to_email", {"replyBody": "On its way"})])

        await executor.execute_workflow(workflow.id, _payload(agent))

        [sent] = mailbox.sent
        assert sent.to == "bob@customer.com"
        assert sent.subject == "Re: Order status"
        assert sent.thread_id == "thread-msg-1"
        assert sent.in_reply_to == "<msg-1@mail.example.com>"
        assert "---------- Original Message ----------" in sent.body

    @pytest.mark.asyncio
    async def test_forward(self, store, executor, mailbox):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [
            ("forward_email", {"forwardTo": "escalations@example.com", "note": "FYI"}),
        ])

        await executor.execute_workflow(workflow.id, _payload(agent))

        [sent] = mailbox.sent
        assert sent.to == "escalations@example.com"
        assert sent.subject == "Fwd: Order status"
        assert sent.body.startswith("FYI")

    @pytest.mark.asyncio
    async def test_generate_ai_reply(self, store, executor, mailbox, reply_generator):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [
            ("generate_ai_reply", {"systemPrompt": "Be brief", "temperature": 0.2}),
        ])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent))

        result = outcome.actions[0]["result"]
        assert result["generatedReply"] == "Thanks for reaching out!"
        assert result["aiModel"] == "fake-model"
        assert result["tokensUsed"] == 42
        assert reply_generator.calls[0]["system_prompt"] == "Be brief"
        assert mailbox.sent[0].body.startswith("Thanks for reaching out!")

    @pytest.mark.asyncio
    async def test_generate_ai_reply_without_generator(self, store, executor):
        executor.reply_generator = None
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [("generate_ai_reply", {})])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent), raise_on_failure=False)

        assert outcome.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_http_request(self, store, executor, webhook):
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [
            ("http_request", {
                "url": "https://hooks.example.com/{{agent.id}}",
                "body": {"subject": "{{email.subject}}"},
            }),
        ])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent))

        [call] = webhook.calls
        assert call["method"] == "POST"
        assert call["url"] == f"https://hooks.example.com/{agent.id}"
        assert call["body"] == {"subject": "Order status"}
        assert outcome.actions[0]["result"] == {"status": 200, "data": {"ok": True}}

    @pytest.mark.asyncio
    async def test_http_request_error(self, store, executor, webhook):
        webhook.error = WebhookError("HTTP 500", {"status": 500})
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [("http_request", {"url": "https://x.test", "method": "put"})])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent), raise_on_failure=False)

        assert outcome.error_message == "HTTP 500"
        assert webhook.calls[0]["method"] == "PUT"

    @pytest.mark.asyncio
    async def test_save_to_database(self, store, executor, database):
        async with database.connect() as db:
            await db.execute("CREATE TABLE leads (id INTEGER PRIMARY KEY, email TEXT, subject TEXT)")
            await db.commit()
        agent = await create_email_agent(store)
        workflow = await _workflow(store, agent.id, [
            ("save_to_database", {
                "tableName": "leads",
                "columnMapping": {"email": "{{email.from}}", "subject": "{{email.subject}}"},
            }),
        ])

        outcome = await executor.execute_workflow(workflow.id, _payload(agent))

        result = outcome.actions[0]["result"]
        assert result["tableName"] == "leads"
        assert result["insertedRow"]["email"] == "bob@customer.com"
        assert result["insertedRow"]["subject"] == "Order status"
