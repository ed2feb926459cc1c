"""Outbound HTTP client behind the ``http_request`` action."""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp
import structlog

from mailflow.core.config import get_config
from mailflow.core.exceptions import WebhookError

logger = structlog.get_logger(__name__)


class WebhookClient(ABC):

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> Dict[str, Any]:
        """Perform the call and return ``{"status": int, "data": ...}``.

        Raises:
            WebhookError: On transport failure or a non-2xx response.
        """


class AiohttpWebhookClient(WebhookClient):

    def __init__(self, timeout_seconds: Optional[float] = None):
        config = get_config()
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or config.webhook.timeout_seconds)

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> Dict[str, Any]:
        method = (method or "POST").upper()
        headers = {"Content-Type": "application/json", **(headers or {})}
        data = None
        if body is not None and method not in ("GET", "HEAD"):
            data = body if isinstance(body, str) else json.dumps(body, default=str)

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=headers, data=data) as response:
                    content_type = response.headers.get("Content-Type", "")
                    if "json" in content_type:
                        payload = await response.json(content_type=None)
                    else:
                        payload = await response.text()
                    status = response.status
        except aiohttp.ClientError as e:
            logger.error("Webhook request failed", url=url, method=method, error=str(e))
            raise WebhookError(f"HTTP request to {url} failed: {e}")
        except asyncio.TimeoutError as e:
            logger.error("Webhook request timed out", url=url, method=method)
            raise WebhookError(f"HTTP request to {url} timed out: {e}")

        if not 200 <= status < 300:
            logger.warning("Webhook returned error status", url=url, status=status)
            raise WebhookError(
                f"HTTP request failed with status {status}",
                {"status": status, "data": payload}
            )

        logger.debug("Webhook request completed", url=url, method=method, status=status)
        return {"status": status, "data": payload}
