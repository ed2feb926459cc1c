"""External provider integrations: mailbox, identity, webhooks and reply generation."""

from .mailbox import MailboxAdapter, compose_forward, compose_reply, strip_html
from .gmail_client import GmailMailboxAdapter, build_query
from .oauth_client import GoogleTokenRefresher, TokenRefresher
from .webhook_client import AiohttpWebhookClient, WebhookClient
from .ollama_client import GeneratedReply, OllamaReplyGenerator, ReplyGenerator

__all__ = [
    "MailboxAdapter",
    "compose_forward",
    "compose_reply",
    "strip_html",
    "GmailMailboxAdapter",
    "build_query",
    "GoogleTokenRefresher",
    "TokenRefresher",
    "AiohttpWebhookClient",
    "WebhookClient",
    "GeneratedReply",
    "OllamaReplyGenerator",
    "ReplyGenerator",
]
