"""Mailbox adapter interface and provider-independent message composition."""

import html
import re
from abc import ABC, abstractmethod
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

from mailflow.models.automation import OAuthCredentials
from mailflow.models.email import EmailMessage, OutgoingEmail, SendResult

_STYLE_BLOCK = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_SCRIPT_BLOCK = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")
_REPLY_PREFIX = re.compile(r"^\s*re:", re.IGNORECASE)
_FORWARD_PREFIX = re.compile(r"^\s*(fwd?|fw):", re.IGNORECASE)


def strip_html(value: Optional[str]) -> str:
    """Reduce an HTML body to collapsed plain text."""
    if not value:
        return ""
    text = _STYLE_BLOCK.sub("", value)
    text = _SCRIPT_BLOCK.sub("", text)
    text = _TAG.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    return _WHITESPACE.sub(" ", text).strip()


def format_header_date(value: str) -> str:
    """Render an RFC 2822 ``Date`` header for quoting, e.g. ``Mon, Jan 06, 2025, 09:30 AM``."""
    if not value:
        return ""
    try:
        return parsedate_to_datetime(value).strftime("%a, %b %d, %Y, %I:%M %p")
    except (TypeError, ValueError):
        return value


def _prefixed(subject: str, prefix: str, pattern: re.Pattern) -> str:
    subject = subject or ""
    if pattern.match(subject):
        return subject
    return f"{prefix} {subject}".rstrip()


def compose_reply(original: EmailMessage, body: str, html_body: Optional[str] = None) -> OutgoingEmail:
    """Build a threaded reply to ``original`` quoting its sender, date, subject and text."""
    quoted = original.body_text or strip_html(original.body)
    date = format_header_date(original.date)
    text = (
        f"{body}\n\n---------- Original Message ----------\n"
        f"From: {original.sender}\nDate: {date}\nSubject: {original.subject}\n\n{quoted}"
    )
    if html_body is None:
        html_body = (
            '<div style="font-family: Arial, sans-serif; font-size: 14px; color: #333;">'
            f'<p style="white-space: pre-line;">{html.escape(body)}</p><br>'
            '<div style="border-top: 1px solid #ccc; margin-top: 20px; padding-top: 10px; color: #666;">'
            f'<p style="margin: 5px 0;"><strong>From:</strong> {html.escape(original.sender)}</p>'
            f'<p style="margin: 5px 0;"><strong>Date:</strong> {html.escape(date)}</p>'
            f'<p style="margin: 5px 0;"><strong>Subject:</strong> {html.escape(original.subject)}</p><br>'
            '<div style="border-left: 3px solid #ccc; padding-left: 10px; color: #666;">'
            f'{html.escape(quoted)}</div></div></div>'
        )
    message_id = original.message_id_header or None
    return OutgoingEmail(
        to=original.sender,
        subject=_prefixed(original.subject, "Re:", _REPLY_PREFIX),
        body=text,
        html=html_body,
        thread_id=original.thread_id or None,
        in_reply_to=message_id,
        references=message_id,
    )


def compose_forward(original: EmailMessage, to: str, note: str = "") -> OutgoingEmail:
    """Build a forward of ``original`` to ``to`` with the usual forwarded-message block."""
    quoted = original.body_text or strip_html(original.body)
    text = (
        f"{note}\n\n---------- Forwarded message ---------\n"
        f"From: {original.sender}\nDate: {original.date}\nSubject: {original.subject}\n\n{quoted}"
    )
    return OutgoingEmail(
        to=to,
        subject=_prefixed(original.subject, "Fwd:", _FORWARD_PREFIX),
        body=text.lstrip("\n") if not note else text,
    )


class MailboxAdapter(ABC):
    """Capabilities the engine needs from a mailbox provider.

    Every call takes the mailbox's credential bundle; adapters keep no
    per-mailbox session state between calls.
    """

    @abstractmethod
    async def list_messages(
        self,
        credentials: OAuthCredentials,
        filters: Optional[Dict[str, Any]] = None,
        max_results: Optional[int] = None,
    ) -> List[EmailMessage]:
        """Fetch messages matching a coarse provider-side filter. Order is provider-defined."""

    @abstractmethod
    async def get_message(self, credentials: OAuthCredentials, message_id: str) -> EmailMessage:
        ...

    @abstractmethod
    async def send(self, credentials: OAuthCredentials, email: OutgoingEmail) -> SendResult:
        ...

    @abstractmethod
    async def mark_read(self, credentials: OAuthCredentials, message_id: str) -> None:
        ...

    @abstractmethod
    async def add_label(self, credentials: OAuthCredentials, message_id: str, label: str) -> None:
        ...

    async def reply(
        self,
        credentials: OAuthCredentials,
        original: EmailMessage,
        body: str,
        html_body: Optional[str] = None,
    ) -> SendResult:
        return await self.send(credentials, compose_reply(original, body, html_body))

    async def forward(
        self,
        credentials: OAuthCredentials,
        original: EmailMessage,
        to: str,
        note: str = "",
    ) -> SendResult:
        return await self.send(credentials, compose_forward(original, to, note))
