"""Turn a final model answer into the fields recorded on a task."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from cell_orchestrator.errors import MalformedResponse
from cell_orchestrator.models import OutputShape, ShapedValue, TaskDefinition
from cell_orchestrator.sanitizer import sanitize
from cell_orchestrator.shapes import CONCISE_MAX_CHARS, as_text, coerce_answer, concise

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InterpretedAnswer:
    result: str
    detail: str | None = None
    source_text: str | None = None
    value: ShapedValue | None = None
    degraded: bool = False


def interpret_answer(task: TaskDefinition, content: str) -> InterpretedAnswer:
    """Parse the answer envelope; fall back to a lossy text result when it cannot be parsed."""
    try:
        parsed = sanitize(content)
    except MalformedResponse as exc:
        logger.info(
            "answer_parse event=degraded task_id=%s reason=%s",
            task.id,
            exc,
        )
        return _lossy(content)

    if isinstance(parsed, dict) and "answer" in parsed:
        answer = parsed["answer"]
        detail = _optional_text(parsed.get("detail"))
        source_text = _optional_text(parsed.get("sourceText", parsed.get("source_text")))
    elif task.output_shape is OutputShape.JSON:
        answer, detail, source_text = parsed, None, None
    else:
        logger.info("answer_parse event=degraded task_id=%s reason=missing answer key", task.id)
        return _lossy(content)

    value = coerce_answer(task.output_shape, answer)
    if value is None:
        logger.info(
            "answer_parse event=uncoercible task_id=%s shape=%s",
            task.id,
            task.output_shape.value,
        )
    return InterpretedAnswer(
        result=concise(answer),
        detail=detail,
        source_text=source_text,
        value=value,
    )


def _lossy(content: str) -> InterpretedAnswer:
    text = content.strip()
    return InterpretedAnswer(
        result=text[:CONCISE_MAX_CHARS].replace("\r", " ").replace("\n", " "),
        detail=text or None,
        degraded=True,
    )


def _optional_text(value: Any) -> str | None:
    text = as_text(value).strip()
    return text or None
