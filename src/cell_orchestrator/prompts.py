"""Prompt text for cell/section execution and the answer envelope contract."""

from __future__ import annotations

from cell_orchestrator.models import OutputShape, SectionType, TaskDefinition

FINAL_TURN_INSTRUCTION = "Provide your final answer now. No more tool calls."

ANSWER_ENVELOPE = (
    "IMPORTANT: You MUST respond with valid JSON only, no markdown fences, no other text:\n"
    '{"answer": <answer>, "detail": "<full explanation of your reasoning>", '
    '"sourceText": "<exact quote from the source that supports your answer>"}'
)

SHAPE_GUIDANCE: dict[OutputShape, str] = {
    OutputShape.TEXT: 'Set "answer" to a concise 1-2 word string.',
    OutputShape.BOOLEAN: 'Set "answer" to "Pass" or "Fail".',
    OutputShape.NUMBER: 'Set "answer" to a single number without units.',
    OutputShape.JSON: 'Set "answer" to a JSON object or array.',
    OutputShape.MARKDOWN: 'Set "answer" to a markdown string.',
    OutputShape.BADGE: 'Set "answer" to a short status label such as "Compliant" or "Missing".',
}

SECTION_SCHEMAS: dict[str, str] = {
    "title": '{"heading": "string", "subtitle": "string"}',
    "text": '{"body": "string (markdown ok)"}',
    "table": '{"headers": ["string"], "rows": [["string"]]}',
    "chart": (
        '{"chartType": "bar|pie|line", "labels": ["string"], '
        '"values": [number], "title": "string"}'
    ),
    "summary": '{"heading": "string", "points": ["string"]}',
    "keyValue": '{"pairs": [{"key": "string", "value": "string"}]}',
    "bulletList": '{"heading": "string", "items": ["string"]}',
    "comparison": (
        '{"heading": "string", "columns": ["string"], '
        '"rows": [{"label": "string", "values": ["string"]}]}'
    ),
}


def schema_for_section(section_type: SectionType | None) -> str:
    if section_type is None:
        return '{"body": "string"}'
    return SECTION_SCHEMAS.get(section_type, '{"body": "string"}')


def wrap_task_prompt(task: TaskDefinition) -> str:
    """System prompt for one task: user prompt + envelope + shape guidance."""
    parts = [task.prompt.strip(), ANSWER_ENVELOPE, SHAPE_GUIDANCE[task.output_shape]]
    if task.output_shape is OutputShape.JSON and task.section_type is not None:
        parts.append(
            f'The "answer" object must match the schema for section type '
            f'"{task.section_type}":\n{schema_for_section(task.section_type)}'
        )
    return "\n\n".join(part for part in parts if part)
