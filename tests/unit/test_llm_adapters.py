import asyncio
import io
import json
from urllib import error

import pytest

from cell_orchestrator.config.settings import Settings
from cell_orchestrator.errors import ModelInvocationFailure
from cell_orchestrator.llm import (
    AnthropicMessagesAdapter,
    OpenAIChatCompletionsAdapter,
    ProviderRouter,
    build_llm_router,
)
from cell_orchestrator.models import Message, ModelConfig, ToolCall, ToolDefinition

LOOKUP = ToolDefinition(
    name="lookup",
    description="Look a key up.",
    parameters={"type": "object", "properties": {"key": {"type": "string"}}},
)
CONVERSATION = [
    Message(role="system", content="You review documents."),
    Message(role="user", content="Document: PSW"),
    Message(
        role="assistant",
        tool_calls=(
            ToolCall(id="c1", name="lookup", args={"key": "rev"}),
            ToolCall(id="c2", name="lookup", args={"key": "part"}),
        ),
    ),
    Message(role="tool", content='{"value": "D"}', tool_call_id="c1", name="lookup"),
    Message(role="tool", content='{"value": "4411-B"}', tool_call_id="c2", name="lookup"),
]


def _http_error(code: int, body: bytes = b"bad request") -> error.HTTPError:
    return error.HTTPError("https://example.test", code, "error", {}, io.BytesIO(body))


def test_openai_payload_carries_tools_and_tool_results() -> None:
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test")
    config = ModelConfig(provider="openai", model="gpt-4o-mini", temperature=0.1, max_tokens=300)

    payload = adapter.build_payload(CONVERSATION, config, tools=[LOOKUP])

    assert payload["model"] == "gpt-4o-mini"
    assert payload["max_tokens"] == 300
    assert payload["tools"][0]["function"]["name"] == "lookup"
    assistant = payload["messages"][2]
    assert assistant["content"] is None
    assert json.loads(assistant["tool_calls"][1]["function"]["arguments"]) == {"key": "part"}
    assert payload["messages"][3] == {"role": "tool", "tool_call_id": "c1", "content": '{"value": "D"}'}
    assert "tool_choice" not in payload


def test_disabled_tool_choice_keeps_definitions_for_both_providers() -> None:
    openai = OpenAIChatCompletionsAdapter(api_key="sk-test").build_payload(
        CONVERSATION,
        ModelConfig(provider="openai", model="gpt-4o-mini"),
        tools=[LOOKUP],
        tool_choice="none",
    )
    anthropic = AnthropicMessagesAdapter(api_key="ak-test").build_payload(
        CONVERSATION,
        ModelConfig(model="claude-3-haiku-20240307"),
        tools=[LOOKUP],
        tool_choice="none",
    )

    assert openai["tool_choice"] == "none"
    assert openai["tools"][0]["function"]["name"] == "lookup"
    assert anthropic["tool_choice"] == {"type": "none"}
    assert anthropic["tools"][0]["name"] == "lookup"


def test_openai_response_is_parsed() -> None:
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test")
    response = adapter.parse_response(
        {
            "choices": [
                {
                    "message": {
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_9",
                                "type": "function",
                                "function": {"name": "lookup", "arguments": '{"key": "rev"}'},
                            },
                            {"function": {"name": "lookup", "arguments": "{not json"}},
                        ],
                    }
                }
            ],
            "usage": {"prompt_tokens": 120, "completion_tokens": 14},
        }
    )

    assert response.content == ""
    assert response.tool_calls[0] == ToolCall(id="call_9", name="lookup", args={"key": "rev"})
    assert response.tool_calls[1].args == {}
    assert (response.usage.input_tokens, response.usage.output_tokens) == (120, 14)


def test_anthropic_payload_merges_tool_results_into_one_user_turn() -> None:
    adapter = AnthropicMessagesAdapter(api_key="ak-test")
    config = ModelConfig(model="claude-3-haiku-20240307", max_tokens=500)

    payload = adapter.build_payload(CONVERSATION, config, tools=[LOOKUP])

    assert payload["system"] == "You review documents."
    assert [turn["role"] for turn in payload["messages"]] == ["user", "assistant", "user"]
    assert [block["type"] for block in payload["messages"][1]["content"]] == ["tool_use", "tool_use"]
    results = payload["messages"][2]["content"]
    assert [block["tool_use_id"] for block in results] == ["c1", "c2"]
    assert payload["tools"][0]["input_schema"] == LOOKUP.parameters
    assert "thinking" not in payload


def test_anthropic_reasoning_budget_enables_thinking() -> None:
    adapter = AnthropicMessagesAdapter(api_key="ak-test")
    config = ModelConfig(
        model="claude-sonnet-4-20250514",
        temperature=0.2,
        max_tokens=1000,
        reasoning_budget_tokens=2048,
    )

    first = adapter.build_payload(CONVERSATION[:2], config, tools=None)
    thinking = {"type": "thinking", "thinking": "Check the PSW first.", "signature": "sig-1"}
    redacted = {"type": "redacted_thinking", "data": "opaque"}
    reply = adapter.parse_response(
        {
            "content": [
                thinking,
                redacted,
                {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"key": "rev"}},
            ]
        }
    )
    second = adapter.build_payload(
        [
            *CONVERSATION[:2],
            Message(
                role="assistant",
                tool_calls=reply.tool_calls,
                provider_blocks=reply.provider_blocks,
            ),
            Message(role="tool", content='{"value": "D"}', tool_call_id="toolu_1"),
        ],
        config,
        tools=[LOOKUP],
    )

    assert first["thinking"] == {"type": "enabled", "budget_tokens": 2048}
    assert first["temperature"] == 1
    assert first["max_tokens"] == 3048
    assert "tools" not in first
    assert reply.provider_blocks == (thinking, redacted)
    assert second["messages"][1]["content"] == [
        thinking,
        redacted,
        {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"key": "rev"}},
    ]
    assert second["messages"][2]["content"][0]["tool_use_id"] == "toolu_1"


def test_anthropic_response_is_parsed() -> None:
    adapter = AnthropicMessagesAdapter(api_key="ak-test")

    response = adapter.parse_response(
        {
            "content": [
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "Checking the revision."},
                {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"key": "rev"}},
            ],
            "usage": {"input_tokens": 50, "output_tokens": 9},
        }
    )

    assert response.content == "Checking the revision."
    assert response.tool_calls == (ToolCall(id="toolu_1", name="lookup", args={"key": "rev"}),)
    assert response.usage.output_tokens == 9


def test_client_errors_are_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = AnthropicMessagesAdapter(api_key="ak-test", max_retries=3, backoff_s=0.0)
    attempts: list[dict] = []

    def fail(payload: dict) -> dict:
        attempts.append(payload)
        raise _http_error(400, b'{"error": "bad model"}')

    monkeypatch.setattr(adapter, "_request", fail)

    with pytest.raises(ModelInvocationFailure, match="status 400"):
        asyncio.run(adapter.invoke(CONVERSATION[:2], ModelConfig(model="nope")))
    assert len(attempts) == 1


def test_transport_errors_are_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", max_retries=2, backoff_s=0.0)
    outcomes = [
        error.URLError("connection refused"),
        _http_error(503, b"overloaded"),
        {"choices": [{"message": {"content": "Pass"}}]},
    ]

    def flaky(payload: dict) -> dict:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(adapter, "_request", flaky)

    response = asyncio.run(
        adapter.invoke(CONVERSATION[:2], ModelConfig(provider="openai", model="gpt-4o"))
    )

    assert response.content == "Pass"
    assert outcomes == []


def test_exhausted_retries_raise_model_invocation_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", max_retries=1, backoff_s=0.0)

    def down(payload: dict) -> dict:
        raise error.URLError("no route to host")

    monkeypatch.setattr(adapter, "_request", down)

    with pytest.raises(ModelInvocationFailure, match="no route to host"):
        asyncio.run(adapter.invoke(CONVERSATION[:2], ModelConfig(provider="openai", model="gpt-4o")))


def test_router_rejects_unconfigured_provider() -> None:
    router = ProviderRouter({})

    with pytest.raises(ModelInvocationFailure, match="openai"):
        asyncio.run(router.invoke(CONVERSATION[:2], ModelConfig(provider="openai", model="gpt-4o")))


def test_router_registers_providers_with_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    router = build_llm_router(Settings(_env_file=None, anthropic_api_key="ak-test"))

    assert list(router.adapters) == ["anthropic"]
    assert router.adapters["anthropic"].api_key == "ak-test"
