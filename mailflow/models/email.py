"""Email-related data models."""

from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field


@dataclass
class EmailMessage:
    """A fetched mailbox message, normalized across providers."""
    id: str
    thread_id: str = ""
    label_ids: List[str] = field(default_factory=list)
    snippet: str = ""
    internal_date: int = 0  # epoch milliseconds, as reported by the provider

    # Headers
    sender: str = ""
    recipient: str = ""
    cc: str = ""
    subject: str = ""
    date: str = ""
    message_id_header: str = ""

    # Content
    body: str = ""
    body_text: str = ""
    body_html: str = ""
    attachments: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0

    def to_payload(self) -> Dict[str, Any]:
        """Convert to the trigger payload shape consumed by workflows."""
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "from": self.sender,
            "to": self.recipient,
            "cc": self.cc,
            "subject": self.subject,
            "date": self.date,
            "body": self.body,
            "snippet": self.snippet,
            "attachments": list(self.attachments),
            "labelIds": list(self.label_ids),
            "messageId": self.message_id_header,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "EmailMessage":
        """Build a message from a trigger payload (the inverse of ``to_payload``)."""
        return cls(
            id=str(data.get("id", "")),
            thread_id=data.get("threadId") or "",
            sender=data.get("from") or "",
            recipient=data.get("to") or "",
            cc=data.get("cc") or "",
            subject=data.get("subject") or "",
            date=data.get("date") or "",
            body=data.get("body") or "",
            snippet=data.get("snippet") or "",
            attachments=list(data.get("attachments") or []),
            label_ids=list(data.get("labelIds") or []),
            message_id_header=data.get("messageId") or "",
        )


@dataclass
class OutgoingEmail:
    """A message to be sent through the mailbox provider."""
    to: str
    subject: str = ""
    body: str = ""
    html: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "to": self.to,
            "cc": self.cc,
            "subject": self.subject,
            "thread_id": self.thread_id,
            "has_html": self.html is not None,
        }


@dataclass
class SendResult:
    """Provider acknowledgement for a sent message."""
    message_id: str
    thread_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"messageId": self.message_id, "threadId": self.thread_id}
