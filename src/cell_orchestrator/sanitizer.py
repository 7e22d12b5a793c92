"""Recover structured JSON from free-form model output.

Models wrap otherwise valid JSON in markdown fences, follow it with commentary,
or leave literal newlines inside string values. Recovery is two-pass:

1) strip fences and trailing text after the last closing brace/bracket, parse;
2) on failure, escape raw control characters inside string literals, parse once more.
"""

from __future__ import annotations

import json
import re
from typing import Any

from cell_orchestrator.errors import MalformedResponse

_FENCE_OPEN = re.compile(r"```[a-zA-Z0-9_-]*[ \t]*\r?\n?")
_STRING_LITERAL = re.compile(r'"(?:[^"\\]|\\.)*"', re.DOTALL)
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def sanitize(raw: str) -> Any:
    """Parse `raw` into a JSON value or raise MalformedResponse."""
    text = _strip_fences(raw)
    if not text:
        raise MalformedResponse("Model response was empty", raw=raw)
    text = _trim_to_structure(text)

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    escaped = _STRING_LITERAL.sub(_escape_control_chars, text)
    try:
        return json.loads(escaped)
    except json.JSONDecodeError as exc:
        raise MalformedResponse(
            f"Model response was not valid JSON: {exc.msg} at position {exc.pos}",
            raw=raw,
        ) from exc


def _strip_fences(raw: str) -> str:
    return _FENCE_OPEN.sub("", raw).replace("```", "").strip()


def _trim_to_structure(text: str) -> str:
    # Leading prose such as "Here is the JSON:" is dropped when a structure follows it.
    if text[0] not in "{[":
        starts = [idx for idx in (text.find("{"), text.find("[")) if idx != -1]
        if starts:
            text = text[min(starts) :]

    last_close = max(text.rfind("}"), text.rfind("]"))
    if last_close != -1 and last_close < len(text) - 1:
        text = text[: last_close + 1]
    return text


def _escape_control_chars(match: re.Match[str]) -> str:
    return _CONTROL_CHARS.sub(lambda ch: _CONTROL_ESCAPES.get(ch.group(0), ""), match.group(0))
