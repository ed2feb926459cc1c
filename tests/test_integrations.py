"""Tests for the Ollama, webhook and OAuth refresh clients."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import aiohttp
import ollama
import pytest
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials

from mailflow.core.exceptions import InvalidCredentialsError, ReplyGenerationError, WebhookError
from mailflow.integrations.oauth_client import GoogleTokenRefresher
from mailflow.integrations.ollama_client import OllamaReplyGenerator
from mailflow.integrations.webhook_client import AiohttpWebhookClient
from tests.fakes import make_message


# ============================================================================
# Ollama
# ============================================================================

class TestOllamaReplyGenerator:

    @pytest.mark.asyncio
    async def test_generate_reply(self):
        generator = OllamaReplyGenerator(model="llama3.2:3b")
        generator.client.chat = AsyncMock(return_value={
            "model": "llama3.2:3b",
            "message": {"role": "assistant", "content": "  Your order ships today.  "},
            "prompt_eval_count": 30,
            "eval_count": 12,
        })

        reply = await generator.generate_reply(make_message(), system_prompt="Be brief", temperature=0.3, max_tokens=200)

        assert reply.reply == "Your order ships today."
        assert reply.model == "llama3.2:3b"
        assert reply.tokens_used == 42

        kwargs = generator.client.chat.call_args.kwargs
        assert kwargs["options"] == {"temperature": 0.3, "num_predict": 200}
        assert kwargs["messages"][0] == {"role": "system", "content": "Be brief"}
        assert "Where is my order?" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_default_system_prompt(self, config):
        generator = OllamaReplyGenerator()
        generator.client.chat = AsyncMock(return_value={"message": {"content": "Hello"}})

        reply = await generator.generate_reply(make_message())

        kwargs = generator.client.chat.call_args.kwargs
        assert kwargs["messages"][0]["content"] == config.ollama.system_prompt
        assert "options" not in kwargs
        assert reply.model == config.ollama.model

    @pytest.mark.asyncio
    async def test_response_error(self):
        generator = OllamaReplyGenerator()
        generator.client.chat = AsyncMock(side_effect=ollama.ResponseError("model not found", 404))

        with pytest.raises(ReplyGenerationError):
            await generator.generate_reply(make_message())

    @pytest.mark.asyncio
    async def test_connection_error(self):
        generator = OllamaReplyGenerator()
        generator.client.chat = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(ReplyGenerationError):
            await generator.generate_reply(make_message())

    @pytest.mark.asyncio
    async def test_empty_reply(self):
        generator = OllamaReplyGenerator()
        generator.client.chat = AsyncMock(return_value={"message": {"content": "   "}})

        with pytest.raises(ReplyGenerationError):
            await generator.generate_reply(make_message())


# ============================================================================
# Webhooks
# ============================================================================

class FakeResponse:

    def __init__(self, status=200, payload=None, content_type="application/json"):
        self.status = status
        self.payload = payload
        self.headers = {"Content-Type": content_type}

    async def json(self, content_type=None):
        return self.payload

    async def text(self):
        return str(self.payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def __call__(self, *args, **kwargs):
        return self

    def request(self, method, url, headers=None, data=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "data": data})
        if self.error is not None:
            raise self.error
        return self.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class TestWebhookClient:

    @pytest.mark.asyncio
    async def test_json_round_trip(self):
        session = FakeSession(FakeResponse(201, {"id": 7}))
        with patch("mailflow.integrations.webhook_client.aiohttp.ClientSession", session):
            result = await AiohttpWebhookClient().request(
                "post", "https://hooks.example.com/x", headers={"X-Token": "t"}, body={"a": 1}
            )

        assert result == {"status": 201, "data": {"id": 7}}
        [call] = session.calls
        assert call["method"] == "POST"
        assert call["data"] == '{"a": 1}'
        assert call["headers"] == {"Content-Type": "application/json", "X-Token": "t"}

    @pytest.mark.asyncio
    async def test_get_sends_no_body(self):
        session = FakeSession(FakeResponse(200, "pong", content_type="text/plain"))
        with patch("mailflow.integrations.webhook_client.aiohttp.ClientSession", session):
            result = await AiohttpWebhookClient().request("GET", "https://x.test", body={"ignored": True})

        assert result == {"status": 200, "data": "pong"}
        assert session.calls[0]["data"] is None

    @pytest.mark.asyncio
    async def test_error_status(self):
        session = FakeSession(FakeResponse(500, {"error": "boom"}))
        with patch("mailflow.integrations.webhook_client.aiohttp.ClientSession", session):
            with pytest.raises(WebhookError) as exc_info:
                await AiohttpWebhookClient().request("POST", "https://x.test")

        assert exc_info.value.details == {"status": 500, "data": {"error": "boom"}}

    @pytest.mark.asyncio
    async def test_transport_error(self):
        session = FakeSession(error=aiohttp.ClientConnectionError("refused"))
        with patch("mailflow.integrations.webhook_client.aiohttp.ClientSession", session):
            with pytest.raises(WebhookError):
                await AiohttpWebhookClient().request("POST", "https://x.test")


# ============================================================================
# OAuth refresh
# ============================================================================

class TestGoogleTokenRefresher:

    @pytest.mark.asyncio
    async def test_refresh(self):
        def refresh(creds, request):
            creds.token = "fresh-access"
            creds.expiry = datetime(2030, 1, 1, 12, 0)

        with patch.object(Credentials, "refresh", autospec=True, side_effect=refresh):
            refreshed = await GoogleTokenRefresher().refresh_access_token("refresh-token")

        assert refreshed.access_token == "fresh-access"
        assert refreshed.refresh_token == "refresh-token"
        assert refreshed.expiry == datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_rejected_refresh(self):
        with patch.object(Credentials, "refresh", autospec=True, side_effect=RefreshError("invalid_grant")):
            with pytest.raises(InvalidCredentialsError):
                await GoogleTokenRefresher().refresh_access_token("refresh-token")

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self):
        with pytest.raises(InvalidCredentialsError):
            await GoogleTokenRefresher().refresh_access_token("")
