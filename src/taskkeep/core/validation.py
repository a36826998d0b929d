# src/taskkeep/core/validation.py

from __future__ import annotations

import re
from collections.abc import Sequence

from .errors import ValidationError

MIN_TEXT_LENGTH = 1
MAX_TEXT_LENGTH = 500
MAX_BATCH_SIZE = 100

_LINE_BREAKS = re.compile(r"[\r\n]+")
_WHITESPACE = re.compile(r"\s+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def sanitize_text(text: str) -> str:
    """
    Normalize user text for storage:
    - trim
    - line breaks -> single space, whitespace runs collapsed
    - control characters stripped
    - truncated to MAX_TEXT_LENGTH
    """
    s = text.strip()
    s = _LINE_BREAKS.sub(" ", s)
    s = _WHITESPACE.sub(" ", s)
    s = _CONTROL_CHARS.sub("", s).strip()
    if len(s) > MAX_TEXT_LENGTH:
        s = s[:MAX_TEXT_LENGTH].rstrip()
    return s


def validate_text(text: object, *, field: str = "text") -> str:
    """Return `text` unchanged if it is storable, else raise ValidationError."""
    if not isinstance(text, str):
        raise ValidationError("Todo text is required", field=field)
    if not text or len(text.strip()) < MIN_TEXT_LENGTH:
        raise ValidationError("Todo text cannot be empty", field=field)
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError(f"Todo text cannot exceed {MAX_TEXT_LENGTH} characters", field=field)
    if "\n" in text or "\r" in text:
        raise ValidationError("Todo text cannot contain line breaks", field=field)
    return text


def clean_text(text: object, *, field: str = "text") -> str:
    """
    The only path user text takes into the store.

    Length and line breaks are checked on the trimmed input, so over-long or
    multi-line text is rejected instead of being truncated or joined.
    """
    if not isinstance(text, str):
        raise ValidationError("Todo text is required", field=field)
    clean = sanitize_text(validate_text(text.strip(), field=field))
    if not clean:
        raise ValidationError("Todo text cannot be empty", field=field)
    return clean


def validate_batch(texts: Sequence[str]) -> list[str]:
    if isinstance(texts, (str, bytes)) or not isinstance(texts, Sequence):
        raise ValidationError("Input must be a list of todos")
    if not texts:
        raise ValidationError("At least one todo is required")
    if len(texts) > MAX_BATCH_SIZE:
        raise ValidationError(f"Cannot create more than {MAX_BATCH_SIZE} todos at once")

    out: list[str] = []
    for i, t in enumerate(texts):
        try:
            out.append(clean_text(t))
        except ValidationError as e:
            raise ValidationError(f"Todo at index {i}: {e.message}", field=e.field) from e
    return out


def is_valid_uuid(value: str) -> bool:
    return bool(_UUID.match(value or ""))
