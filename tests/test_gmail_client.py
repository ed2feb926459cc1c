"""Tests for the Gmail mailbox adapter and message composition."""

import base64
import email
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError

from mailflow.core.exceptions import (
    AuthorizationError,
    InvalidCredentialsError,
    ProviderError,
    RateLimitError,
    TemporaryProviderError,
)
from mailflow.integrations.gmail_client import GmailMailboxAdapter, build_query, build_raw_message
from mailflow.integrations.mailbox import compose_forward, compose_reply, format_header_date, strip_html
from mailflow.models.email import OutgoingEmail
from tests.fakes import make_message, valid_credentials


def _b64(text):
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def _http_error(status, reason="", message="x"):
    content = {"error": {"message": message}}
    if reason:
        content["error"]["errors"] = [{"reason": reason, "message": message}]
    return HttpError(MagicMock(status=status, reason="error"), json.dumps(content).encode("utf-8"))


def _error_info(status, reason):
    content = {"error": {"message": "x", "details": [{
        "@type": "type.googleapis.com/google.rpc.ErrorInfo",
        "reason": reason,
        "domain": "googleapis.com",
    }]}}
    return HttpError(MagicMock(status=status, reason="error"), json.dumps(content).encode("utf-8"))


GMAIL_MESSAGE = {
    "id": "18c1f",
    "threadId": "18c1e",
    "labelIds": ["INBOX", "UNREAD"],
    "snippet": "Where is my order?",
    "internalDate": "1700000000000",
    "payload": {
        "mimeType": "multipart/mixed",
        "headers": [
            {"name": "Subject", "value": "Order status"},
            {"name": "From", "value": "Bob <bob@customer.com>"},
            {"name": "To", "value": "support@example.com"},
            {"name": "Date", "value": "Tue, 14 Nov 2023 22:13:20 +0000"},
            {"name": "Message-ID", "value": "<abc@mail.customer.com>"},
        ],
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": _b64("Where is my order?")}},
                    {"mimeType": "text/html", "body": {"data": _b64("<p>Where is my order?</p>")}},
                ],
            },
            {
                "mimeType": "application/pdf",
                "filename": "receipt.pdf",
                "body": {"attachmentId": "att-1", "size": 2048},
            },
        ],
    },
}


# ============================================================================
# Query building
# ============================================================================

class TestBuildQuery:

    def test_empty(self):
        assert build_query(None) == ""

    def test_all_filters(self):
        query = build_query({
            "from": "bob@customer.com",
            "to": "support@example.com",
            "subject": "order status",
            "hasAttachment": True,
            "isUnread": True,
            "labels": ["INBOX", "Work"],
            "after": 1700000000,
            "before": datetime(2023, 11, 15, tzinfo=timezone.utc),
            "query": "-category:promotions",
        })
        assert query == (
            'from:bob@customer.com to:support@example.com subject:"order status" '
            "has:attachment is:unread label:INBOX label:Work after:1700000000 "
            "before:1700006400 -category:promotions"
        )

    def test_single_label_and_bare_subject(self):
        assert build_query({"label": "INBOX", "subject": "invoice"}) == "subject:invoice label:INBOX"

    @pytest.mark.parametrize("flag", ["false", "0", "no", False])
    def test_false_flags_are_left_out(self, flag):
        assert build_query({"hasAttachment": flag, "isUnread": flag}) == ""

    def test_string_true_flags(self):
        assert build_query({"hasAttachment": "true", "isUnread": "yes"}) == "has:attachment is:unread"


# ============================================================================
# Parsing
# ============================================================================

class TestParseMessage:

    def test_parse_full_message(self):
        message = GmailMailboxAdapter()._parse_message(GMAIL_MESSAGE)

        assert message.id == "18c1f"
        assert message.thread_id == "18c1e"
        assert message.sender == "Bob <bob@customer.com>"
        assert message.recipient == "support@example.com"
        assert message.subject == "Order status"
        assert message.message_id_header == "<abc@mail.customer.com>"
        assert message.internal_date == 1700000000000
        assert message.body_text == "Where is my order?"
        assert message.body == "<p>Where is my order?</p>"
        assert message.attachments == [{
            "filename": "receipt.pdf",
            "mimeType": "application/pdf",
            "size": 2048,
            "attachmentId": "att-1",
        }]
        assert message.has_attachments

    def test_parse_minimal_message(self):
        message = GmailMailboxAdapter()._parse_message({"id": "m1", "payload": {"mimeType": "text/plain"}})
        assert message.body == ""
        assert message.attachments == []


# ============================================================================
# Error mapping
# ============================================================================

class TestErrorMapping:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,expected",
        [
            (_http_error(401), AuthorizationError),
            (_http_error(403, "insufficientPermissions"), AuthorizationError),
            (_http_error(403, "authError"), AuthorizationError),
            (_http_error(403, "forbidden"), AuthorizationError),
            (_error_info(403, "ACCESS_TOKEN_SCOPE_INSUFFICIENT"), AuthorizationError),
            (_http_error(403), ProviderError),
            (_http_error(403, "domainPolicy"), ProviderError),
            (_http_error(403, "userRateLimitExceeded"), RateLimitError),
            (_http_error(403, "dailyLimitExceeded"), RateLimitError),
            (_http_error(403, "quotaExceeded"), RateLimitError),
            (_error_info(403, "RATE_LIMIT_EXCEEDED"), RateLimitError),
            (_http_error(429, "rateLimitExceeded"), RateLimitError),
            (_http_error(429), RateLimitError),
            (_http_error(500), TemporaryProviderError),
            (_http_error(503), TemporaryProviderError),
            (_http_error(404), ProviderError),
            (RefreshError("invalid_grant"), InvalidCredentialsError),
            (TransportError("connection reset"), TemporaryProviderError),
        ],
    )
    async def test_maps_errors(self, error, expected):
        request = MagicMock()
        request.execute.side_effect = error

        with pytest.raises(expected) as exc_info:
            await GmailMailboxAdapter()._api_request(request)

        assert type(exc_info.value) is expected

    @pytest.mark.asyncio
    async def test_not_found_is_not_retryable(self):
        request = MagicMock()
        request.execute.side_effect = _http_error(404)

        with pytest.raises(ProviderError) as exc_info:
            await GmailMailboxAdapter()._api_request(request)

        assert not isinstance(exc_info.value, (TemporaryProviderError, AuthorizationError))
        assert exc_info.value.details["status"] == 404


# ============================================================================
# Adapter calls
# ============================================================================

class TestAdapterCalls:

    @pytest.fixture
    def service(self):
        service = MagicMock()
        messages = service.users.return_value.messages.return_value
        messages.list.return_value.execute.return_value = {"messages": [{"id": "18c1f"}]}
        messages.get.return_value.execute.return_value = GMAIL_MESSAGE
        messages.send.return_value.execute.return_value = {"id": "sent-1", "threadId": "18c1e"}
        messages.modify.return_value.execute.return_value = {}
        service.users.return_value.labels.return_value.list.return_value.execute.return_value = {
            "labels": [{"id": "Label_42", "name": "Customers"}]
        }
        return service

    @pytest.mark.asyncio
    async def test_list_messages(self, service):
        adapter = GmailMailboxAdapter()
        with patch.object(adapter, "_service", return_value=service):
            messages = await adapter.list_messages(valid_credentials(), {"isUnread": True, "after": 1700000000})

        assert [m.id for m in messages] == ["18c1f"]
        service.users.return_value.messages.return_value.list.assert_called_once_with(
            userId="me", maxResults=10, q="is:unread after:1700000000"
        )

    @pytest.mark.asyncio
    async def test_list_messages_empty(self, service):
        service.users.return_value.messages.return_value.list.return_value.execute.return_value = {}
        adapter = GmailMailboxAdapter()
        with patch.object(adapter, "_service", return_value=service):
            assert await adapter.list_messages(valid_credentials(), max_results=3) == []

    @pytest.mark.asyncio
    async def test_list_messages_follows_pages(self, service):
        listing = service.users.return_value.messages.return_value.list
        listing.return_value.execute.side_effect = [
            {"messages": [{"id": f"m{i}"} for i in range(10)], "nextPageToken": "page-2"},
            {"messages": [{"id": "m10"}, {"id": "m11"}]},
        ]
        adapter = GmailMailboxAdapter()
        with patch.object(adapter, "_service", return_value=service):
            messages = await adapter.list_messages(valid_credentials(), {"isUnread": True})

        assert len(messages) == 12
        assert listing.call_args_list[1].kwargs == {
            "userId": "me", "maxResults": 10, "q": "is:unread", "pageToken": "page-2"
        }

    @pytest.mark.asyncio
    async def test_list_messages_stops_at_limit(self, service):
        listing = service.users.return_value.messages.return_value.list
        listing.return_value.execute.side_effect = [
            {"messages": [{"id": f"m{i}"} for i in range(10)], "nextPageToken": "page-2"},
            {"messages": [{"id": f"n{i}"} for i in range(5)], "nextPageToken": "page-3"},
        ]
        adapter = GmailMailboxAdapter()
        with patch.object(adapter, "_service", return_value=service):
            messages = await adapter.list_messages(valid_credentials(), max_results=15)

        assert len(messages) == 15
        assert listing.call_count == 2
        assert listing.call_args_list[1].kwargs["maxResults"] == 5

    @pytest.mark.asyncio
    async def test_send_keeps_thread(self, service):
        adapter = GmailMailboxAdapter()
        with patch.object(adapter, "_service", return_value=service):
            result = await adapter.reply(valid_credentials(), make_message(), "On its way")

        assert result.message_id == "sent-1"
        body = service.users.return_value.messages.return_value.send.call_args.kwargs["body"]
        assert body["threadId"] == "thread-msg-1"
        parsed = email.message_from_bytes(base64.urlsafe_b64decode(body["raw"]))
        assert parsed["Subject"] == "Re: Order status"
        assert parsed["In-Reply-To"] == "<msg-1@mail.example.com>"

    @pytest.mark.asyncio
    async def test_mark_read(self, service):
        adapter = GmailMailboxAdapter()
        with patch.object(adapter, "_service", return_value=service):
            await adapter.mark_read(valid_credentials(), "18c1f")

        service.users.return_value.messages.return_value.modify.assert_called_once_with(
            userId="me", id="18c1f", body={"removeLabelIds": ["UNREAD"]}
        )

    @pytest.mark.asyncio
    async def test_add_label_resolves_name(self, service):
        adapter = GmailMailboxAdapter()
        with patch.object(adapter, "_service", return_value=service):
            await adapter.add_label(valid_credentials(), "18c1f", "customers")
            await adapter.add_label(valid_credentials(), "18c1f", "STARRED")

        calls = service.users.return_value.messages.return_value.modify.call_args_list
        assert calls[0].kwargs["body"] == {"addLabelIds": ["Label_42"]}
        assert calls[1].kwargs["body"] == {"addLabelIds": ["STARRED"]}

    @pytest.mark.asyncio
    async def test_add_unknown_label(self, service):
        adapter = GmailMailboxAdapter()
        with patch.object(adapter, "_service", return_value=service):
            with pytest.raises(ProviderError):
                await adapter.add_label(valid_credentials(), "18c1f", "Nonexistent")


# ============================================================================
# Composition
# ============================================================================

class TestComposition:

    def test_raw_message(self):
        raw = build_raw_message(OutgoingEmail(
            to="bob@customer.com", subject="Hello", body="Plain", html="<b>Rich</b>", cc="cc@example.com"
        ))
        parsed = email.message_from_bytes(base64.urlsafe_b64decode(raw))

        assert parsed["To"] == "bob@customer.com"
        assert parsed["Cc"] == "cc@example.com"
        assert parsed.is_multipart()
        assert [part.get_content_type() for part in parsed.get_payload()] == ["text/plain", "text/html"]

    def test_reply_prefix_not_doubled(self):
        reply = compose_reply(make_message(subject="RE: Order status"), "Thanks")
        assert reply.subject == "RE: Order status"

    def test_reply_quotes_original(self):
        reply = compose_reply(make_message(), "Thanks")
        assert reply.body == (
            "Thanks\n\n---------- Original Message ----------\n"
            "From: bob@customer.com\nDate: Tue, Nov 14, 2023, 10:13 PM\n"
            "Subject: Order status\n\nWhere is my order?"
        )
        assert "&lt;" not in reply.html

    def test_forward_without_note(self):
        forward = compose_forward(make_message(subject="Fw: Order status"), "ops@example.com")
        assert forward.subject == "Fw: Order status"
        assert forward.body.startswith("---------- Forwarded message ---------")
        assert forward.thread_id is None

    def test_helpers(self):
        assert strip_html("<style>p{}</style><p>Hello&nbsp;<b>there</b></p>") == "Hello there"
        assert format_header_date("not a date") == "not a date"
        assert format_header_date("") == ""
