"""``{{path}}`` substitution over nested payload data.

A template is split into literal text and placeholder tokens; each
placeholder holds a dot-path (``email.from``, ``email.attachments.0.filename``)
resolved against the payload. Missing paths render as the empty string
unless the caller asks for strict rendering.
"""

import json
from functools import lru_cache
from typing import Any, List, Mapping, Tuple

from mailflow.core.exceptions import TemplateError

OPEN = "{{"
CLOSE = "}}"

# Policy for placeholders whose path does not resolve: "empty" renders "".
MISSING_PATH_POLICY = "empty"


class _Missing:
    def __repr__(self):
        return "MISSING"


MISSING = _Missing()

# (is_placeholder, text) pairs
Token = Tuple[bool, str]


@lru_cache(maxsize=1024)
def tokenize(template: str) -> Tuple[Token, ...]:
    """Split ``template`` into literal and placeholder tokens.

    An opening brace pair without a matching close is kept as literal text.
    """
    tokens: List[Token] = []
    position = 0
    while True:
        start = template.find(OPEN, position)
        if start == -1:
            break
        end = template.find(CLOSE, start + len(OPEN))
        if end == -1:
            break
        if start > position:
            tokens.append((False, template[position:start]))
        tokens.append((True, template[start + len(OPEN):end].strip()))
        position = end + len(CLOSE)
    if position < len(template):
        tokens.append((False, template[position:]))
    return tuple(tokens)


def resolve_path(data: Any, path: str) -> Any:
    """Walk a dot-path through mappings and sequences; ``MISSING`` if any step fails."""
    if not path:
        return MISSING
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(key)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def render(template: str, data: Any, strict: bool = False) -> str:
    """Substitute every placeholder in ``template`` with its value from ``data``.

    Raises:
        TemplateError: In strict mode, when a path does not resolve.
    """
    if not isinstance(template, str) or OPEN not in template:
        return template

    parts: List[str] = []
    for is_placeholder, text in tokenize(template):
        if not is_placeholder:
            parts.append(text)
            continue
        value = resolve_path(data, text)
        if value is MISSING:
            if strict:
                raise TemplateError(f"Unresolved template path: {text}", {"path": text})
            continue
        parts.append(_stringify(value))
    return "".join(parts)


def render_value(value: Any, data: Any, strict: bool = False) -> Any:
    """Render every string nested inside ``value``; other scalars pass through."""
    if isinstance(value, str):
        return render(value, data, strict=strict)
    if isinstance(value, Mapping):
        return {key: render_value(item, data, strict=strict) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, data, strict=strict) for item in value]
    return value
