"""Schema-enforcing tool dispatch with timeout/retry telemetry.

Dispatch never raises: failures come back as `{"error": ..., "tool": ...}` so the
model can read them inside the conversation.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Collection, Iterable, Mapping
from typing import Any

from pydantic import BaseModel

from cell_orchestrator.models import TaskContext, ToolDefinition
from cell_orchestrator.tools.registry import ToolSpec, tool_definitions

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """Route tool calls to registered handlers with validation and retry controls."""

    def __init__(
        self,
        *,
        registry: Mapping[str, ToolSpec] | None = None,
        tool_timeout_s: float = 10.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        self.registry: dict[str, ToolSpec] = dict(registry or {})
        self.tool_timeout_s = tool_timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def definitions(self, names: Iterable[str]) -> list[ToolDefinition]:
        return tool_definitions(self.registry, names)

    async def dispatch(
        self,
        tool_name: str,
        args: dict[str, Any],
        context: TaskContext,
        *,
        allowed: Collection[str] | None = None,
    ) -> Any:
        started_at = time.perf_counter()
        if allowed is not None and tool_name not in allowed:
            logger.warning(
                "tool_dispatch event=not_allowed tool=%s target_id=%s",
                tool_name,
                context.target_id,
            )
            return {"error": f"Tool '{tool_name}' is not available for this task", "tool": tool_name}

        final_error = "unknown error"
        attempts = 0
        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                output = await self._dispatch_once(tool_name, args, context)
            except Exception as exc:  # noqa: BLE001
                final_error = str(exc) or type(exc).__name__
                if attempt < self.max_retries and self.backoff_s > 0:
                    await asyncio.sleep(self.backoff_s)
                continue
            logger.info(
                "tool_dispatch event=ok tool=%s target_id=%s attempts=%d duration_ms=%s",
                tool_name,
                context.target_id,
                attempts,
                _duration_ms(started_at),
            )
            return output

        logger.warning(
            "tool_dispatch event=failed tool=%s target_id=%s attempts=%d duration_ms=%s error=%s",
            tool_name,
            context.target_id,
            attempts,
            _duration_ms(started_at),
            final_error,
        )
        return {"error": final_error, "tool": tool_name}

    async def _dispatch_once(
        self,
        tool_name: str,
        args: dict[str, Any],
        context: TaskContext,
    ) -> Any:
        spec = self.registry.get(tool_name)
        if spec is None:
            raise ValueError(f"Unknown tool: {tool_name}")

        payload = spec.input_model.model_validate(args)
        if inspect.iscoroutinefunction(spec.fn):
            pending = spec.fn(payload, context)
        else:
            pending = asyncio.to_thread(spec.fn, payload, context)
        try:
            raw_output = await asyncio.wait_for(pending, timeout=self.tool_timeout_s)
        except TimeoutError as exc:
            raise TimeoutError(
                f"Tool '{tool_name}' timed out after {self.tool_timeout_s:.2f}s"
            ) from exc

        if spec.output_model is not None:
            return spec.output_model.model_validate(raw_output).model_dump(mode="json")
        if isinstance(raw_output, BaseModel):
            return raw_output.model_dump(mode="json")
        return raw_output


def is_error_payload(payload: Any) -> bool:
    return isinstance(payload, dict) and "error" in payload


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
