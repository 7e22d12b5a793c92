import asyncio
import json
from collections.abc import Callable, Sequence
from typing import Any

import pytest

from cell_orchestrator.config.settings import Settings
from cell_orchestrator.models import (
    Message,
    ModelConfig,
    ModelResponse,
    Target,
    TaskDefinition,
    TokenUsage,
    ToolDefinition,
)
from cell_orchestrator.runner import CollectionRunner, build_runner
from cell_orchestrator.storage.memory import InMemoryTargetStorage

HAIKU = ModelConfig(provider="anthropic", model="claude-3-haiku-20240307")


class ScriptedLLM:
    """Fake model adapter: replays queued responses or delegates to a handler."""

    def __init__(
        self,
        responses: Sequence[ModelResponse | Exception] | None = None,
        *,
        handler: Callable[..., Any] | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.responses = list(responses or [])
        self.handler = handler
        self.delay_s = delay_s
        self.calls: list[dict[str, Any]] = []

    async def invoke(
        self,
        messages: Sequence[Message],
        config: ModelConfig,
        *,
        tools: Sequence[ToolDefinition] | None = None,
        tool_choice: str = "auto",
    ) -> ModelResponse:
        self.calls.append(
            {
                "messages": list(messages),
                "config": config,
                "tools": list(tools) if tools else None,
                "tool_choice": tool_choice,
            }
        )
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.handler is not None:
            # Handlers see only the tools the model may call on this turn.
            callable_tools = tools if tool_choice == "auto" else None
            response = self.handler(list(messages), config, callable_tools)
            if asyncio.iscoroutine(response):
                response = await response
            return response
        if not self.responses:
            return answer_response("ok")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def envelope(answer: Any, *, detail: str = "", source_text: str = "") -> str:
    return json.dumps({"answer": answer, "detail": detail, "sourceText": source_text})


def answer_response(answer: Any, **kwargs: Any) -> ModelResponse:
    return ModelResponse(
        content=envelope(answer, **kwargs),
        usage=TokenUsage(input_tokens=10, output_tokens=5),
    )


def make_task(task_id: str = "status", **overrides: Any) -> TaskDefinition:
    fields: dict[str, Any] = {
        "id": task_id,
        "name": task_id.title(),
        "prompt": f"Answer the {task_id} question for this document.",
        "model": HAIKU,
    }
    fields.update(overrides)
    return TaskDefinition(**fields)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="",
        anthropic_api_key="",
        cell_concurrency=2,
        section_concurrency=1,
    )


@pytest.fixture
def sample_targets() -> list[Target]:
    return [
        Target(
            id="doc-a",
            name="Control Plan.pdf",
            type="control_plan",
            content="Part number 4411-B revision C. Torque spec 12 Nm.",
        ),
        Target(
            id="doc-b",
            name="PSW.pdf",
            type="psw",
            content="Part Submission Warrant for part 4411-B revision D. Signed.",
            extracted_data={"part_number": "4411-B", "revision": "D"},
        ),
        Target(
            id="doc-c",
            name="Dimensional Report.xlsx",
            type="dimensional",
            content="Measured length 120.4 mm, tolerance 120 +/- 0.5 mm.",
        ),
    ]


@pytest.fixture
def make_runner(settings: Settings, sample_targets: list[Target]):
    def _make(llm: ScriptedLLM, **overrides: Any) -> CollectionRunner:
        effective = settings.model_copy(update=overrides) if overrides else settings
        return build_runner(effective, llm=llm, targets=InMemoryTargetStorage(sample_targets))

    return _make
