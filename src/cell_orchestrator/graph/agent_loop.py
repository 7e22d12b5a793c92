"""Bounded tool-calling conversation for one task, assembled as a LangGraph workflow.

call_model -> (tool calls and budget left) -> dispatch_tools -> call_model ...
call_model -> (no tool calls, or budget spent) -> END

The last allowed model call appends a no-more-tools instruction and is made
with tool calling disabled, so the loop always terminates.
"""

from __future__ import annotations

import json
import logging
import time

from langgraph.graph import END, StateGraph

from cell_orchestrator.graph.results import interpret_answer
from cell_orchestrator.graph.state import LoopState, initial_loop_state
from cell_orchestrator.llm import LLMAdapter
from cell_orchestrator.models import (
    ExecutionResult,
    Message,
    StopReason,
    TaskContext,
    TaskDefinition,
    ToolCallRecord,
)
from cell_orchestrator.prompts import FINAL_TURN_INSTRUCTION, wrap_task_prompt
from cell_orchestrator.tools.gateway import ToolDispatcher, is_error_payload

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "Analysis incomplete"


class AgentLoopExecutor:
    def __init__(
        self,
        llm: LLMAdapter,
        dispatcher: ToolDispatcher,
        *,
        iteration_cap: int = 4,
    ) -> None:
        if iteration_cap < 1:
            raise ValueError(f"iteration_cap must be >= 1, got {iteration_cap}")
        self.llm = llm
        self.dispatcher = dispatcher
        self.iteration_cap = iteration_cap
        self._graph = self._build_graph()

    async def run(
        self,
        task: TaskDefinition,
        context: TaskContext,
        *,
        source_material: str = "",
    ) -> ExecutionResult:
        started_at = time.perf_counter()
        messages = [
            Message(role="system", content=wrap_task_prompt(task)),
            Message(role="user", content=source_material or "No source material was provided."),
        ]
        state = initial_loop_state(
            task,
            context,
            messages,
            tool_definitions=self.dispatcher.definitions(task.tools) if task.tools else [],
            iteration_cap=self.iteration_cap,
        )
        final = await self._graph.ainvoke(
            state,
            config={"recursion_limit": 2 * self.iteration_cap + 2},
        )

        content = _final_content(final)
        answer = interpret_answer(task, content)
        stop_reason = _stop_reason(final)
        duration_ms = _duration_ms(started_at)
        logger.info(
            "agent_loop event=finished task_id=%s target_id=%s model_calls=%d tool_calls=%d "
            "stop_reason=%s degraded=%s duration_ms=%s",
            task.id,
            context.target_id,
            final["iteration"],
            len(final["tool_calls"]),
            stop_reason,
            answer.degraded,
            duration_ms,
        )
        return ExecutionResult(
            result=answer.result,
            detail=answer.detail,
            source_text=answer.source_text,
            value=answer.value,
            usage=final["usage"],
            latency_ms=duration_ms,
            tool_calls=tuple(final["tool_calls"]),
            stop_reason=stop_reason,
            model_calls=final["iteration"],
            degraded=answer.degraded,
        )

    def _build_graph(self):
        def _route(state: LoopState) -> str:
            response = state.get("last_response")
            if response is None or not response.tool_calls:
                return "done"
            if state.get("iteration", 0) >= self.iteration_cap:
                return "done"
            return "tools"

        graph = StateGraph(LoopState)
        graph.add_node("call_model", self._call_model)
        graph.add_node("dispatch_tools", self._dispatch_tools)

        graph.set_entry_point("call_model")
        graph.add_conditional_edges("call_model", _route, {"tools": "dispatch_tools", "done": END})
        graph.add_edge("dispatch_tools", "call_model")

        return graph.compile()

    async def _call_model(self, state: LoopState) -> LoopState:
        task = state["task"]
        iteration = state["iteration"]
        messages = list(state["messages"])
        tools = state["tool_definitions"]

        forced_final = bool(tools) and iteration >= self.iteration_cap - 1
        if forced_final:
            messages.append(Message(role="user", content=FINAL_TURN_INSTRUCTION))

        logger.debug(
            "agent_loop event=model_call task_id=%s iteration=%d tools_enabled=%s",
            task.id,
            iteration,
            bool(tools) and not forced_final,
        )
        response = await self.llm.invoke(
            messages,
            task.model,
            tools=tools or None,
            # Final turn keeps the definitions so earlier tool turns stay valid.
            tool_choice="none" if forced_final else "auto",
        )
        messages.append(
            Message(
                role="assistant",
                content=response.content,
                tool_calls=response.tool_calls,
                provider_blocks=response.provider_blocks,
            )
        )
        return {
            "messages": messages,
            "iteration": iteration + 1,
            "usage": state["usage"].plus(response.usage),
            "last_response": response,
            "forced_final": forced_final,
        }

    async def _dispatch_tools(self, state: LoopState) -> LoopState:
        task = state["task"]
        context = state["context"]
        response = state["last_response"]
        messages = list(state["messages"])
        records = list(state["tool_calls"])
        allowed = set(task.tools)

        # Sequential, in the order the model issued them; one result per call.
        for call in response.tool_calls if response is not None else ():
            payload = await self.dispatcher.dispatch(
                call.name,
                call.args,
                context,
                allowed=allowed,
            )
            records.append(
                ToolCallRecord(name=call.name, args=call.args, failed=is_error_payload(payload))
            )
            messages.append(
                Message(
                    role="tool",
                    content=json.dumps(payload, default=str),
                    tool_call_id=call.id,
                    name=call.name,
                )
            )
        return {"messages": messages, "tool_calls": records}


def _final_content(state: LoopState) -> str:
    response = state.get("last_response")
    if response is not None and response.content.strip():
        return response.content
    for message in reversed(state.get("messages", [])):
        if message.role == "assistant" and message.content.strip():
            return message.content
    return FALLBACK_ANSWER


def _stop_reason(state: LoopState) -> StopReason:
    response = state.get("last_response")
    if response is not None and response.tool_calls:
        return "iteration_cap"
    if state.get("forced_final"):
        return "forced_final_turn"
    return "answered"


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
