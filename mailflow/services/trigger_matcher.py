"""Decide whether an incoming message is relevant to a workflow."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Pattern, Tuple

import structlog

from mailflow.core.exceptions import ValidationError
from mailflow.models.automation import TriggerConfig, Workflow
from mailflow.models.common import TriggerType, as_bool
from mailflow.models.email import EmailMessage

logger = structlog.get_logger(__name__)

# Filter key -> message attribute tested with a case-insensitive regex search
REGEX_FILTERS = {
    "from": "sender",
    "to": "recipient",
    "subject": "subject",
    "body": "body",
    "bodyContains": "body",
}


@dataclass(frozen=True)
class CompiledTrigger:
    """A trigger with its filter patterns compiled once."""
    type: str
    patterns: Tuple[Tuple[str, Pattern], ...] = ()
    has_attachment: Optional[bool] = None
    labels: Optional[FrozenSet[str]] = None

    @classmethod
    def compile(cls, trigger: TriggerConfig) -> "CompiledTrigger":
        """Compile a trigger's filters.

        Raises:
            ValidationError: If a filter pattern is not a valid regular expression.
        """
        filters: Dict[str, Any] = trigger.filters or {}
        patterns = []
        for key, attribute in REGEX_FILTERS.items():
            pattern = filters.get(key)
            if pattern in (None, ""):
                continue
            try:
                patterns.append((attribute, re.compile(str(pattern), re.IGNORECASE)))
            except re.error as e:
                raise ValidationError(
                    f"Invalid {key} filter pattern {pattern!r}: {e}",
                    {"filter": key, "pattern": pattern}
                )

        has_attachment = None
        if filters.get("hasAttachment") is not None:
            has_attachment = as_bool(filters["hasAttachment"])

        labels = filters.get("labels")
        if isinstance(labels, str):
            labels = [labels]

        return cls(
            type=trigger.type,
            patterns=tuple(patterns),
            has_attachment=has_attachment,
            labels=frozenset(labels) if labels else None,
        )

    def matches(self, message: EmailMessage, event_type: str = TriggerType.EMAIL_RECEIVED.value) -> bool:
        if self.type != event_type:
            return False

        for attribute, pattern in self.patterns:
            if not pattern.search(getattr(message, attribute) or ""):
                return False

        if self.has_attachment is not None and self.has_attachment != message.has_attachments:
            return False

        if self.labels is not None and self.labels.isdisjoint(message.label_ids):
            return False

        return True


class TriggerMatcher:
    """Caches compiled triggers per workflow, invalidated when the workflow changes."""

    def __init__(self):
        self._cache: Dict[str, Tuple[Optional[datetime], CompiledTrigger]] = {}

    def compile(self, workflow: Workflow) -> CompiledTrigger:
        cached = self._cache.get(workflow.id)
        if cached is not None and cached[0] == workflow.updated_at:
            return cached[1]
        compiled = CompiledTrigger.compile(workflow.trigger_config)
        self._cache[workflow.id] = (workflow.updated_at, compiled)
        return compiled

    def forget(self, workflow_id: str) -> None:
        self._cache.pop(workflow_id, None)

    def should_trigger(
        self,
        workflow: Workflow,
        message: EmailMessage,
        event_type: str = TriggerType.EMAIL_RECEIVED.value,
    ) -> bool:
        """True when the workflow's trigger type and every declared filter accept ``message``.

        Absent filters are "don't care"; a trigger without filters matches
        every message of its event type.
        """
        return self.compile(workflow).matches(message, event_type)


_default_matcher = TriggerMatcher()


def should_trigger(
    workflow: Workflow,
    message: EmailMessage,
    event_type: str = TriggerType.EMAIL_RECEIVED.value,
) -> bool:
    return _default_matcher.should_trigger(workflow, message, event_type)
