"""Gmail implementation of the mailbox adapter."""

import asyncio
import base64
import time
from datetime import datetime
from email.message import EmailMessage as MIMEMessage
from typing import Any, Dict, List, Optional, Tuple

import structlog
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailflow.core.config import get_config
from mailflow.core.exceptions import (
    AuthorizationError,
    InvalidCredentialsError,
    ProviderError,
    RateLimitError,
    TemporaryProviderError,
)
from mailflow.integrations.mailbox import MailboxAdapter
from mailflow.models.automation import OAuthCredentials
from mailflow.models.common import as_bool
from mailflow.models.email import EmailMessage, OutgoingEmail, SendResult

logger = structlog.get_logger(__name__)

# Gmail system labels can be passed to ``add_label`` by id
SYSTEM_LABELS = {
    "INBOX", "SPAM", "TRASH", "UNREAD", "STARRED", "IMPORTANT", "SENT", "DRAFT",
    "CATEGORY_PERSONAL", "CATEGORY_SOCIAL", "CATEGORY_PROMOTIONS",
    "CATEGORY_UPDATES", "CATEGORY_FORUMS",
}


class RateLimiter:
    """Sliding one-second window over request count and quota units."""

    def __init__(self, requests_per_second: int = 10, quota_per_user_per_second: int = 250):
        self.requests_per_second = requests_per_second
        self.quota_per_user_per_second = quota_per_user_per_second
        self.request_times: List[float] = []
        self.quota_usage: List[Tuple[float, int]] = []
        self._lock = asyncio.Lock()

    async def acquire(self, quota_cost: int = 1):
        async with self._lock:
            now = time.monotonic()
            self.request_times = [t for t in self.request_times if now - t < 1.0]
            self.quota_usage = [(t, cost) for t, cost in self.quota_usage if now - t < 1.0]

            sleep_time = 0.0
            if len(self.request_times) >= self.requests_per_second:
                sleep_time = max(sleep_time, 1.0 - (now - self.request_times[0]))
            used = sum(cost for _, cost in self.quota_usage)
            if self.quota_usage and used + quota_cost > self.quota_per_user_per_second:
                sleep_time = max(sleep_time, 1.0 - (now - self.quota_usage[0][0]))
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
                now = time.monotonic()

            self.request_times.append(now)
            self.quota_usage.append((now, quota_cost))


def _epoch_seconds(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(float(value))


def build_query(filters: Optional[Dict[str, Any]] = None) -> str:
    """Translate a filter mapping into a Gmail search query.

    Recognised keys: ``from``, ``to``, ``subject``, ``hasAttachment``,
    ``isUnread``, ``label``/``labels``, ``after``/``before`` (datetime or
    epoch seconds) and ``query`` for raw search terms.
    """
    filters = filters or {}
    parts: List[str] = []

    if filters.get("from"):
        parts.append(f"from:{filters['from']}")
    if filters.get("to"):
        parts.append(f"to:{filters['to']}")
    if filters.get("subject"):
        subject = str(filters["subject"])
        parts.append(f'subject:"{subject}"' if " " in subject else f"subject:{subject}")
    if as_bool(filters.get("hasAttachment")):
        parts.append("has:attachment")
    if as_bool(filters.get("isUnread")):
        parts.append("is:unread")

    labels = filters.get("labels") or filters.get("label")
    if isinstance(labels, str):
        labels = [labels]
    for label in labels or []:
        parts.append(f"label:{label}")

    after = _epoch_seconds(filters.get("after"))
    if after is not None:
        parts.append(f"after:{after}")
    before = _epoch_seconds(filters.get("before"))
    if before is not None:
        parts.append(f"before:{before}")

    if filters.get("query"):
        parts.append(str(filters["query"]))

    return " ".join(parts)


def build_raw_message(email: OutgoingEmail) -> str:
    """Encode an outgoing email as the base64url RFC 822 payload Gmail expects."""
    mime = MIMEMessage()
    mime["To"] = email.to
    if email.cc:
        mime["Cc"] = email.cc
    if email.bcc:
        mime["Bcc"] = email.bcc
    mime["Subject"] = email.subject
    if email.in_reply_to:
        mime["In-Reply-To"] = email.in_reply_to
    if email.references:
        mime["References"] = email.references

    mime.set_content(email.body or "")
    if email.html:
        mime.add_alternative(email.html, subtype="html")

    return base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii")


RATE_LIMIT_REASONS = ("ratelimitexceeded", "quotaexceeded", "dailylimitexceeded")
AUTH_REASONS = (
    "insufficientpermissions", "autherror", "forbidden", "accesstokenscopeinsufficient",
)


def _normalize_reason(reason: Any) -> str:
    return str(reason or "").lower().replace("_", "").replace(" ", "")


def _error_reasons(error: HttpError) -> List[str]:
    """Collect normalized ``reason`` values from both Google error payload shapes."""
    details = error.error_details if isinstance(error.error_details, list) else []
    return [
        _normalize_reason(detail.get("reason"))
        for detail in details
        if isinstance(detail, dict) and detail.get("reason")
    ]


def map_http_error(error: HttpError) -> ProviderError:
    """Map a Gmail ``HttpError`` onto the provider error taxonomy.

    Quota and rate-limit rejections are transient even when Gmail reports
    them as 403. Only 401, and 403 with an authorization reason, mean the
    mailbox needs re-authorization.
    """
    status = int(error.resp.status)
    reasons = _error_reasons(error)
    details = {"status": status, "reasons": reasons}

    if status == 429 or any(marker in reason for reason in reasons for marker in RATE_LIMIT_REASONS):
        return RateLimitError(f"Rate limit exceeded: {error}", details)
    if status == 401 or (status == 403 and any(reason in AUTH_REASONS for reason in reasons)):
        return AuthorizationError(f"Gmail authorization failed: {error}", details)
    if 500 <= status < 600:
        return TemporaryProviderError(f"Temporary Gmail error: {error}", details)
    return ProviderError(f"Gmail API error: {error}", details)


class GmailMailboxAdapter(MailboxAdapter):
    """Gmail API adapter. Stateless per mailbox: a service is built per credential bundle."""

    def __init__(self):
        self.config = get_config()
        self.rate_limiter = RateLimiter(
            requests_per_second=self.config.gmail.rate_limit["requests_per_second"],
            quota_per_user_per_second=self.config.gmail.rate_limit["quota_per_user_per_second"]
        )

    def _service(self, credentials: OAuthCredentials):
        creds = Credentials(
            token=credentials.access_token,
            refresh_token=credentials.refresh_token or None,
            token_uri=self.config.oauth.token_uri,
            client_id=self.config.oauth.client_id,
            client_secret=self.config.oauth.client_secret,
            scopes=self.config.gmail.scopes,
        )
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    async def _api_request(self, request, quota_cost: int = 1) -> Any:
        """Execute a prepared API request with rate limiting and error mapping."""
        await self.rate_limiter.acquire(quota_cost)

        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise map_http_error(e)
        except RefreshError as e:
            raise InvalidCredentialsError(f"Gmail credentials rejected: {e}")
        except (TransportError, OSError) as e:
            logger.warning("Gmail request failed", error=str(e))
            raise TemporaryProviderError(f"Gmail request failed: {e}")

    async def list_messages(
        self,
        credentials: OAuthCredentials,
        filters: Optional[Dict[str, Any]] = None,
        max_results: Optional[int] = None,
    ) -> List[EmailMessage]:
        """List every message matching ``filters``, following ``nextPageToken``.

        Pages hold ``gmail.batch_size`` references. Listing stops when the
        provider runs out of pages or ``max_results`` (default
        ``gmail.max_messages_per_poll``) messages have been collected.
        """
        service = self._service(credentials)
        query = build_query(filters)
        limit = int(max_results or (filters or {}).get("maxResults") or self.config.gmail.max_messages_per_poll)
        page_size = min(self.config.gmail.batch_size, 500)

        references: List[Dict[str, Any]] = []
        page_token = None
        while len(references) < limit:
            params: Dict[str, Any] = {'userId': 'me', 'maxResults': min(page_size, limit - len(references))}
            if query:
                params['q'] = query
            if page_token:
                params['pageToken'] = page_token

            response = await self._api_request(service.users().messages().list(**params), quota_cost=5)
            references.extend(response.get('messages', []))
            page_token = response.get('nextPageToken')
            if not page_token:
                break

        # One message at a time keeps provider load bounded
        messages = []
        for reference in references[:limit]:
            data = await self._api_request(
                service.users().messages().get(userId='me', id=reference['id'], format='full'),
                quota_cost=5
            )
            messages.append(self._parse_message(data))

        logger.debug("Messages listed", query=query, count=len(messages), truncated=bool(page_token))
        return messages

    async def get_message(self, credentials: OAuthCredentials, message_id: str) -> EmailMessage:
        service = self._service(credentials)
        data = await self._api_request(
            service.users().messages().get(userId='me', id=message_id, format='full'),
            quota_cost=5
        )
        return self._parse_message(data)

    async def send(self, credentials: OAuthCredentials, email: OutgoingEmail) -> SendResult:
        service = self._service(credentials)
        body: Dict[str, Any] = {'raw': build_raw_message(email)}
        if email.thread_id:
            body['threadId'] = email.thread_id

        response = await self._api_request(
            service.users().messages().send(userId='me', body=body),
            quota_cost=100
        )
        result = SendResult(message_id=response.get('id', ''), thread_id=response.get('threadId', ''))
        logger.info("Email sent", to=email.to, subject=email.subject[:50], message_id=result.message_id)
        return result

    async def _modify(
        self,
        credentials: OAuthCredentials,
        message_id: str,
        add_label_ids: Optional[List[str]] = None,
        remove_label_ids: Optional[List[str]] = None
    ) -> None:
        body = {}
        if add_label_ids:
            body['addLabelIds'] = add_label_ids
        if remove_label_ids:
            body['removeLabelIds'] = remove_label_ids

        service = self._service(credentials)
        await self._api_request(
            service.users().messages().modify(userId='me', id=message_id, body=body),
            quota_cost=5
        )
        logger.debug("Labels modified", message_id=message_id, added=add_label_ids, removed=remove_label_ids)

    async def mark_read(self, credentials: OAuthCredentials, message_id: str) -> None:
        await self._modify(credentials, message_id, remove_label_ids=['UNREAD'])

    async def add_label(self, credentials: OAuthCredentials, message_id: str, label: str) -> None:
        """Add a label by id, resolving a user label name to its id when needed."""
        label_id = label
        if label not in SYSTEM_LABELS and not label.startswith("Label_"):
            label_id = await self._resolve_label_id(credentials, label)
        await self._modify(credentials, message_id, add_label_ids=[label_id])

    async def _resolve_label_id(self, credentials: OAuthCredentials, name: str) -> str:
        service = self._service(credentials)
        response = await self._api_request(service.users().labels().list(userId='me'))
        for label in response.get('labels', []):
            if label['id'] == name or label['name'].lower() == name.lower():
                return label['id']
        raise ProviderError(f"Gmail label not found: {name}", {"label": name})

    def _parse_message(self, msg_data: Dict[str, Any]) -> EmailMessage:
        """Parse Gmail message data into an EmailMessage."""
        message = EmailMessage(
            id=msg_data['id'],
            thread_id=msg_data.get('threadId', ''),
            label_ids=msg_data.get('labelIds', []),
            snippet=msg_data.get('snippet', ''),
            internal_date=int(msg_data.get('internalDate', 0)),
        )

        payload = msg_data.get('payload', {})
        for header in payload.get('headers', []):
            name = header['name'].lower()
            value = header['value']

            if name == 'subject':
                message.subject = value
            elif name == 'from':
                message.sender = value
            elif name == 'to':
                message.recipient = value
            elif name == 'cc':
                message.cc = value
            elif name == 'date':
                message.date = value
            elif name == 'message-id':
                message.message_id_header = value

        message.body_text, message.body_html = self._extract_body(payload)
        message.body = message.body_html or message.body_text
        message.attachments = self._extract_attachments(payload)
        return message

    def _extract_body(self, payload: Dict[str, Any]) -> Tuple[str, str]:
        """Extract text and HTML bodies from a message payload."""
        text_body = ""
        html_body = ""

        def decode(part) -> str:
            data = part.get('body', {}).get('data')
            if not data:
                return ""
            return base64.urlsafe_b64decode(data + '=' * (-len(data) % 4)).decode('utf-8', errors='ignore')

        def extract_parts(part):
            nonlocal text_body, html_body

            mime_type = part.get('mimeType', '')
            if part.get('filename'):
                return
            if mime_type == 'text/plain':
                text_body += decode(part)
            elif mime_type == 'text/html':
                html_body += decode(part)
            elif 'parts' in part:
                for subpart in part['parts']:
                    extract_parts(subpart)

        extract_parts(payload)
        return text_body, html_body

    def _extract_attachments(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        attachments = []

        def extract_parts(part):
            body = part.get('body', {})
            if body.get('attachmentId'):
                attachments.append({
                    'filename': part.get('filename', ''),
                    'mimeType': part.get('mimeType', ''),
                    'size': body.get('size', 0),
                    'attachmentId': body['attachmentId']
                })

            for subpart in part.get('parts', []):
                extract_parts(subpart)

        extract_parts(payload)
        return attachments
