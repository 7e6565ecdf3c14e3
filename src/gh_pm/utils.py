"""Provide small helpers for timestamps and input sanitisation."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from .constants import MAX_MESSAGE_LENGTH, MAX_TASK_ID, MIN_TASK_ID

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_DIGITS_RE = re.compile(r"[0-9]+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _now_display() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def validate_task_id(value: object) -> int:
    """Coerce *value* into a task id, raising ``ValueError`` when it is not one.

    Task ids are GitHub issue numbers: plain digits in ``1..999999``.
    """
    if isinstance(value, bool):
        raise ValueError(f"Task id must be numeric (got: {value!r})")
    if isinstance(value, int):
        number = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("Task id is required")
        if not _DIGITS_RE.fullmatch(text):
            raise ValueError(f"Task id must be numeric (got: {text})")
        number = int(text)
    if number < MIN_TASK_ID or number > MAX_TASK_ID:
        raise ValueError(f"Task id out of valid range ({MIN_TASK_ID}-{MAX_TASK_ID}): {number}")
    return number


def sanitize_text(value: str | None, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Strip control characters (newlines and tabs survive) and truncate."""
    if not value:
        return ""
    clean = _CONTROL_CHARS_RE.sub("", str(value))
    return clean[:max_length].strip()
