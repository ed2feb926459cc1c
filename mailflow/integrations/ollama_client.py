"""Ollama-backed reply generation for the ``generate_ai_reply`` action."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import ollama
import structlog

from mailflow.core.config import get_config
from mailflow.core.exceptions import ReplyGenerationError
from mailflow.integrations.mailbox import strip_html
from mailflow.models.email import EmailMessage

logger = structlog.get_logger(__name__)


@dataclass
class GeneratedReply:
    reply: str
    model: str = ""
    tokens_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"reply": self.reply, "model": self.model, "tokensUsed": self.tokens_used}


class ReplyGenerator(ABC):

    @abstractmethod
    async def generate_reply(
        self,
        message: EmailMessage,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> GeneratedReply:
        """Draft a reply body for ``message``.

        Raises:
            ReplyGenerationError: If the model cannot produce a reply.
        """


class OllamaReplyGenerator(ReplyGenerator):
    """Chat-completion reply drafts from a local Ollama model."""

    def __init__(self, host: Optional[str] = None, model: Optional[str] = None):
        self.config = get_config()
        self.client = ollama.AsyncClient(host=host or self.config.ollama.host, timeout=self.config.ollama.timeout)
        self.model = model or self.config.ollama.model

    @staticmethod
    def build_prompt(message: EmailMessage) -> str:
        body = message.body_text or strip_html(message.body)
        return (
            "Write a reply to the following email.\n\n"
            f"From: {message.sender}\n"
            f"Subject: {message.subject}\n"
            f"Date: {message.date}\n\n"
            f"{body}\n\n"
            "Reply with the email body only, without a subject line."
        )

    async def generate_reply(
        self,
        message: EmailMessage,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> GeneratedReply:
        model_name = model or self.model
        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = float(temperature)
        if max_tokens is not None:
            options["num_predict"] = int(max_tokens)

        params: Dict[str, Any] = {
            "model": model_name,
            "messages": [
                {"role": "system", "content": system_prompt or self.config.ollama.system_prompt},
                {"role": "user", "content": self.build_prompt(message)},
            ],
        }
        if options:
            params["options"] = options

        try:
            response = await self.client.chat(**params)
        except ollama.ResponseError as e:
            logger.error("Reply generation failed", model=model_name, error=str(e))
            raise ReplyGenerationError(f"Ollama chat failed: {e}", {"model": model_name})
        except (httpx.HTTPError, ConnectionError) as e:
            logger.error("Ollama unreachable", host=self.config.ollama.host, error=str(e))
            raise ReplyGenerationError(f"Ollama connection error: {e}", {"model": model_name})

        reply = (response['message']['content'] or "").strip()
        if not reply:
            raise ReplyGenerationError("Model returned an empty reply", {"model": model_name})

        logger.debug("AI reply generated", model=model_name, length=len(reply))
        return GeneratedReply(
            reply=reply,
            model=response.get('model') or model_name,
            tokens_used=(response.get('prompt_eval_count') or 0) + (response.get('eval_count') or 0),
        )
