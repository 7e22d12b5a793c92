"""Tool registry: host-supplied handlers keyed by tool name."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel

from cell_orchestrator.models import TaskContext, ToolDefinition

logger = logging.getLogger(__name__)

# Handlers may be plain functions or coroutine functions.
ToolHandler = Callable[[BaseModel, TaskContext], Any]


@dataclass(frozen=True)
class ToolSpec:
    input_model: type[BaseModel]
    fn: ToolHandler
    description: str = ""
    output_model: type[BaseModel] | None = None


def list_tools(registry: Mapping[str, ToolSpec]) -> list[str]:
    return sorted(registry.keys())


def tool_definitions(
    registry: Mapping[str, ToolSpec],
    names: Iterable[str],
) -> list[ToolDefinition]:
    """Describe the named tools for the model, skipping names with no handler."""
    definitions: list[ToolDefinition] = []
    for name in names:
        spec = registry.get(name)
        if spec is None:
            logger.warning("tool_registry event=unknown_tool tool=%s", name)
            continue
        definitions.append(
            ToolDefinition(
                name=name,
                description=spec.description,
                parameters=spec.input_model.model_json_schema(),
            )
        )
    return definitions
