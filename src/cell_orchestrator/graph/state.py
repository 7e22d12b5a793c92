"""Typed state contract for the agent loop graph."""

from typing import TypedDict

from cell_orchestrator.models import (
    Message,
    ModelResponse,
    TaskContext,
    TaskDefinition,
    TokenUsage,
    ToolCallRecord,
    ToolDefinition,
)


class LoopState(TypedDict, total=False):
    task: TaskDefinition
    context: TaskContext
    tool_definitions: list[ToolDefinition]
    messages: list[Message]
    iteration: int
    iteration_cap: int
    usage: TokenUsage
    tool_calls: list[ToolCallRecord]
    last_response: ModelResponse | None
    forced_final: bool


def initial_loop_state(
    task: TaskDefinition,
    context: TaskContext,
    messages: list[Message],
    *,
    tool_definitions: list[ToolDefinition] | None = None,
    iteration_cap: int = 4,
) -> LoopState:
    return {
        "task": task,
        "context": context,
        "tool_definitions": list(tool_definitions or []),
        "messages": list(messages),
        "iteration": 0,
        "iteration_cap": iteration_cap,
        "usage": TokenUsage(),
        "tool_calls": [],
        "last_response": None,
        "forced_final": False,
    }
