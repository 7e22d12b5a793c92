import json

from conftest import envelope, make_task

from cell_orchestrator.graph.results import interpret_answer
from cell_orchestrator.models import (
    BadgeValue,
    JsonValue,
    MarkdownValue,
    NumberValue,
    OutputShape,
    TextValue,
)
from cell_orchestrator.prompts import SECTION_SCHEMAS, wrap_task_prompt
from cell_orchestrator.shapes import coerce_answer, concise


def test_envelope_fields_are_mapped() -> None:
    task = make_task("rev")

    answer = interpret_answer(task, envelope("Rev D", detail="PSW lists D", source_text="revision D"))

    assert answer.result == "Rev D"
    assert answer.detail == "PSW lists D"
    assert answer.source_text == "revision D"
    assert answer.value == TextValue(value="Rev D")
    assert answer.degraded is False


def test_number_answers_are_parsed_from_text() -> None:
    task = make_task("length", output_shape=OutputShape.NUMBER)

    answer = interpret_answer(task, envelope("1,204.5 mm"))

    assert answer.value == NumberValue(value=1204.5)


def test_uncoercible_answer_keeps_result_without_value() -> None:
    task = make_task("signed", output_shape=OutputShape.BOOLEAN)

    answer = interpret_answer(task, envelope("Unclear"))

    assert answer.result == "Unclear"
    assert answer.value is None
    assert answer.degraded is False


def test_json_shape_without_envelope_uses_whole_object() -> None:
    task = make_task("table", output_shape=OutputShape.JSON, surface="section", section_type="table")
    content = '```json\n{"headers": ["Part"], "rows": [["4411-B"]]}\n```'

    answer = interpret_answer(task, content)

    assert answer.value == JsonValue(value={"headers": ["Part"], "rows": [["4411-B"]]})
    assert json.loads(answer.result) == {"headers": ["Part"], "rows": [["4411-B"]]}


def test_non_json_shape_without_answer_key_degrades() -> None:
    answer = interpret_answer(make_task("rev"), '{"revision": "D"}')

    assert answer.degraded is True
    assert answer.value is None
    assert answer.detail == '{"revision": "D"}'


def test_coerce_answer_covers_every_shape() -> None:
    assert coerce_answer(OutputShape.BADGE, " Compliant ") == BadgeValue(value="Compliant")
    assert coerce_answer(OutputShape.MARKDOWN, "# Title") == MarkdownValue(value="# Title")
    assert coerce_answer(OutputShape.BOOLEAN, "Fail - signature missing").value is False
    assert coerce_answer(OutputShape.BOOLEAN, "Non-compliant").value is False
    assert coerce_answer(OutputShape.NUMBER, "none found") is None
    assert coerce_answer(OutputShape.NUMBER, True) is None
    assert coerce_answer(OutputShape.JSON, '["a", "b"]') == JsonValue(value=["a", "b"])
    assert coerce_answer(OutputShape.JSON, "plain words") is None
    assert coerce_answer(OutputShape.TEXT, {"k": 1}) == TextValue(value='{"k":1}')


def test_concise_truncates_long_text_and_structures() -> None:
    long_text = "word " * 30

    assert concise("  Rev   D ") == "Rev D"
    assert concise(long_text) == ("word " * 9).strip() + " wo..."
    assert len(concise(long_text)) == 50
    assert coerce_answer(OutputShape.TEXT, long_text) == TextValue(value=long_text)
    shortened = concise({"items": list(range(40))})
    assert len(shortened) == 50
    assert shortened.endswith("...")


def test_section_prompt_includes_content_schema() -> None:
    task = make_task("chart", output_shape=OutputShape.JSON, surface="section", section_type="chart")

    prompt = wrap_task_prompt(task)

    assert task.prompt in prompt
    assert SECTION_SCHEMAS["chart"] in prompt
    assert '"answer"' in prompt
