"""Coerce model answers into the payload type of a task's output shape."""

from __future__ import annotations

import json
import re
from typing import Any, assert_never

from cell_orchestrator.errors import MalformedResponse
from cell_orchestrator.models import (
    BadgeValue,
    BooleanValue,
    JsonValue,
    MarkdownValue,
    NumberValue,
    OutputShape,
    ShapedValue,
    TextValue,
)
from cell_orchestrator.sanitizer import sanitize

CONCISE_MAX_CHARS = 50

TRUE_WORDS = {"pass", "passed", "true", "yes", "y", "compliant", "present", "ok", "valid"}
FALSE_WORDS = {
    "fail",
    "failed",
    "false",
    "no",
    "n",
    "non-compliant",
    "noncompliant",
    "missing",
    "invalid",
}
_NUMBER = re.compile(r"-?\d[\d,]*(?:\.\d+)?|-?\.\d+")


def coerce_answer(shape: OutputShape, answer: Any) -> ShapedValue | None:
    """Return the typed payload for `shape`, or None when `answer` does not fit it."""
    if shape is OutputShape.TEXT:
        return TextValue(value=as_text(answer))
    if shape is OutputShape.MARKDOWN:
        return MarkdownValue(value=as_text(answer))
    if shape is OutputShape.BADGE:
        return BadgeValue(value=as_text(answer).strip())
    if shape is OutputShape.BOOLEAN:
        flag = _as_bool(answer)
        return None if flag is None else BooleanValue(value=flag)
    if shape is OutputShape.NUMBER:
        number = _as_number(answer)
        return None if number is None else NumberValue(value=number)
    if shape is OutputShape.JSON:
        structured = _as_structure(answer)
        return None if structured is None else JsonValue(value=structured)
    assert_never(shape)


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def concise(value: Any) -> str:
    """Short display string for a table cell; the coerced value keeps the full answer."""
    text = " ".join(as_text(value).split())
    if len(text) > CONCISE_MAX_CHARS:
        return text[: CONCISE_MAX_CHARS - 3].rstrip() + "..."
    return text


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower().rstrip(".!")
    if normalized in TRUE_WORDS:
        return True
    if normalized in FALSE_WORDS:
        return False
    first_word = normalized.split(maxsplit=1)[0].strip(".,:;!") if normalized else ""
    if first_word in TRUE_WORDS:
        return True
    if first_word in FALSE_WORDS:
        return False
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    match = _NUMBER.search(value)
    if match is None:
        return None
    try:
        return float(match.group(0).replace(",", ""))
    except ValueError:
        return None


def _as_structure(value: Any) -> dict[str, Any] | list[Any] | None:
    if isinstance(value, (dict, list)):
        return value
    if not isinstance(value, str):
        return None
    try:
        parsed = sanitize(value)
    except MalformedResponse:
        return None
    return parsed if isinstance(parsed, (dict, list)) else None
