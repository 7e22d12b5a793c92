"""Model invocation adapters.

Each adapter turns the provider-neutral message list into one provider's wire
format, calls its REST API and maps the reply back to a ModelResponse. HTTP is
blocking (urllib), so `invoke` runs the request in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any, Protocol
from urllib import error, request

from cell_orchestrator.config.settings import Settings
from cell_orchestrator.errors import ModelInvocationFailure
from cell_orchestrator.models import (
    Message,
    ModelConfig,
    ModelResponse,
    TokenUsage,
    ToolCall,
    ToolChoice,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
# Returned with extended thinking; must be sent back unchanged on the next tool turn.
THINKING_BLOCK_TYPES = frozenset({"thinking", "redacted_thinking"})


class LLMAdapter(Protocol):
    """Interface for one chat-model call, optionally with tool calling enabled."""

    async def invoke(
        self,
        messages: Sequence[Message],
        config: ModelConfig,
        *,
        tools: Sequence[ToolDefinition] | None = None,
        tool_choice: ToolChoice = "auto",
    ) -> ModelResponse: ...


class _JsonHttpAdapter:
    provider = ""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        timeout_s: float = 60.0,
        max_retries: int = 1,
        backoff_s: float = 0.5,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    async def invoke(
        self,
        messages: Sequence[Message],
        config: ModelConfig,
        *,
        tools: Sequence[ToolDefinition] | None = None,
        tool_choice: ToolChoice = "auto",
    ) -> ModelResponse:
        payload = self.build_payload(
            messages, config, tools=tools, tool_choice=tool_choice
        )
        response_json = await asyncio.to_thread(self._request_with_retry, payload, config.model)
        try:
            return self.parse_response(response_json)
        except (KeyError, TypeError, ValueError) as exc:
            raise ModelInvocationFailure(
                f"{self.provider} response could not be parsed: {exc}",
                provider=self.provider,
            ) from exc

    def build_payload(
        self,
        messages: Sequence[Message],
        config: ModelConfig,
        *,
        tools: Sequence[ToolDefinition] | None,
        tool_choice: ToolChoice = "auto",
    ) -> dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, response_json: dict[str, Any]) -> ModelResponse:
        raise NotImplementedError

    def _endpoint(self) -> str:
        raise NotImplementedError

    def _headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _request_with_retry(self, payload: dict[str, Any], model: str) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except error.HTTPError as exc:
                body = exc.read().decode("utf-8", errors="replace")
                last_error = ModelInvocationFailure(
                    f"{self.provider} request failed with status {exc.code}: {body[:400]}",
                    provider=self.provider,
                )
                if exc.code < 500 and exc.code != 429:
                    raise last_error from exc
            except (TimeoutError, ValueError, error.URLError) as exc:
                last_error = exc
            logger.warning(
                "llm_request event=retry provider=%s model=%s attempt=%d/%d reason=%s",
                self.provider,
                model,
                attempt + 1,
                self.max_retries + 1,
                last_error,
            )
            if attempt < self.max_retries and self.backoff_s > 0:
                time.sleep(self.backoff_s)

        if isinstance(last_error, ModelInvocationFailure):
            raise last_error
        raise ModelInvocationFailure(
            f"{self.provider} request failed: {last_error}",
            provider=self.provider,
        ) from last_error

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=self._endpoint(),
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json", **self._headers()},
        )
        with request.urlopen(req, timeout=self.timeout_s) as response:
            body = response.read().decode("utf-8")
        return json.loads(body)


class OpenAIChatCompletionsAdapter(_JsonHttpAdapter):
    """OpenAI chat completions REST API with function-style tools."""

    provider = "openai"

    def __init__(self, *, api_key: str, base_url: str = "https://api.openai.com/v1", **kwargs: Any):
        super().__init__(api_key=api_key, base_url=base_url, **kwargs)

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def build_payload(
        self,
        messages: Sequence[Message],
        config: ModelConfig,
        *,
        tools: Sequence[ToolDefinition] | None,
        tool_choice: ToolChoice = "auto",
    ) -> dict[str, Any]:
        if config.reasoning_budget_tokens:
            logger.debug(
                "llm_request event=reasoning_budget_ignored provider=openai model=%s",
                config.model,
            )
        payload: dict[str, Any] = {
            "model": config.model,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "messages": [_openai_message(message) for message in messages],
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in tools
            ]
            if tool_choice == "none":
                payload["tool_choice"] = "none"
        return payload

    def parse_response(self, response_json: dict[str, Any]) -> ModelResponse:
        choices = response_json.get("choices", [])
        if not choices:
            raise ValueError("OpenAI response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content")
        if isinstance(content, list):
            text = "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        elif isinstance(content, str):
            text = content
        else:
            text = ""

        tool_calls: list[ToolCall] = []
        for raw_call in message.get("tool_calls") or []:
            function = raw_call.get("function", {})
            tool_calls.append(
                ToolCall(
                    id=raw_call.get("id") or f"call_{len(tool_calls)}",
                    name=function.get("name", ""),
                    args=_decode_arguments(function.get("arguments")),
                )
            )

        usage = response_json.get("usage") or {}
        return ModelResponse(
            content=text,
            usage=TokenUsage(
                input_tokens=int(usage.get("prompt_tokens", 0) or 0),
                output_tokens=int(usage.get("completion_tokens", 0) or 0),
            ),
            tool_calls=tuple(tool_calls),
        )


class AnthropicMessagesAdapter(_JsonHttpAdapter):
    """Anthropic messages REST API with tool_use blocks and extended thinking."""

    provider = "anthropic"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.anthropic.com/v1",
        **kwargs: Any,
    ):
        super().__init__(api_key=api_key, base_url=base_url, **kwargs)

    def _endpoint(self) -> str:
        return f"{self.base_url}/messages"

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}

    def build_payload(
        self,
        messages: Sequence[Message],
        config: ModelConfig,
        *,
        tools: Sequence[ToolDefinition] | None,
        tool_choice: ToolChoice = "auto",
    ) -> dict[str, Any]:
        system = "\n\n".join(m.content for m in messages if m.role == "system" and m.content)
        payload: dict[str, Any] = {
            "model": config.model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": _anthropic_messages(messages),
        }
        if system:
            payload["system"] = system
        if config.reasoning_budget_tokens:
            # Extended thinking requires temperature 1 and room for the thinking tokens.
            payload["thinking"] = {
                "type": "enabled",
                "budget_tokens": config.reasoning_budget_tokens,
            }
            payload["temperature"] = 1
            payload["max_tokens"] = config.max_tokens + config.reasoning_budget_tokens
        if tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in tools
            ]
            if tool_choice == "none":
                # Definitions stay so earlier tool_use blocks remain valid.
                payload["tool_choice"] = {"type": "none"}
        return payload

    def parse_response(self, response_json: dict[str, Any]) -> ModelResponse:
        blocks = response_json.get("content")
        if not isinstance(blocks, list):
            raise ValueError("Anthropic response did not contain content blocks")

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        provider_blocks: list[dict[str, Any]] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                text_parts.append(block["text"])
            elif block.get("type") in THINKING_BLOCK_TYPES:
                provider_blocks.append(block)
            elif block.get("type") == "tool_use":
                tool_input = block.get("input")
                tool_calls.append(
                    ToolCall(
                        id=block.get("id") or f"toolu_{len(tool_calls)}",
                        name=block.get("name", ""),
                        args=tool_input if isinstance(tool_input, dict) else {},
                    )
                )

        usage = response_json.get("usage") or {}
        return ModelResponse(
            content="".join(text_parts),
            usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0) or 0),
                output_tokens=int(usage.get("output_tokens", 0) or 0),
            ),
            tool_calls=tuple(tool_calls),
            provider_blocks=tuple(provider_blocks),
        )


class ProviderRouter:
    """Route each call to the adapter registered for `config.provider`."""

    def __init__(self, adapters: Mapping[str, LLMAdapter]) -> None:
        self.adapters = dict(adapters)

    async def invoke(
        self,
        messages: Sequence[Message],
        config: ModelConfig,
        *,
        tools: Sequence[ToolDefinition] | None = None,
        tool_choice: ToolChoice = "auto",
    ) -> ModelResponse:
        adapter = self.adapters.get(config.provider)
        if adapter is None:
            raise ModelInvocationFailure(
                f"No model adapter configured for provider: {config.provider}",
                provider=config.provider,
            )
        return await adapter.invoke(messages, config, tools=tools, tool_choice=tool_choice)


def build_llm_router(settings: Settings) -> ProviderRouter:
    """Register an adapter for every provider that has an API key."""
    adapters: dict[str, LLMAdapter] = {}
    common = {
        "timeout_s": settings.llm_timeout_s,
        "max_retries": settings.llm_max_retries,
        "backoff_s": settings.llm_backoff_s,
    }
    openai_key = settings.resolved_openai_api_key()
    if openai_key:
        adapters["openai"] = OpenAIChatCompletionsAdapter(
            api_key=openai_key, base_url=settings.openai_base_url, **common
        )
    anthropic_key = settings.resolved_anthropic_api_key()
    if anthropic_key:
        adapters["anthropic"] = AnthropicMessagesAdapter(
            api_key=anthropic_key, base_url=settings.anthropic_base_url, **common
        )
    if not adapters:
        logger.warning("llm_router event=no_providers reason=no API keys configured")
    return ProviderRouter(adapters)


def _openai_message(message: Message) -> dict[str, Any]:
    if message.role == "tool":
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "content": message.content,
        }
    if message.role == "assistant" and message.tool_calls:
        return {
            "role": "assistant",
            "content": message.content or None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.args)},
                }
                for call in message.tool_calls
            ],
        }
    return {"role": message.role, "content": message.content}


def _anthropic_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    output: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue
        if message.role == "tool":
            role = "user"
            blocks: list[dict[str, Any]] = [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                }
            ]
        elif message.role == "assistant":
            role = "assistant"
            blocks = [dict(block) for block in message.provider_blocks]
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            blocks.extend(
                {"type": "tool_use", "id": call.id, "name": call.name, "input": call.args}
                for call in message.tool_calls
            )
            if not blocks:
                blocks = [{"type": "text", "text": "(no content)"}]
        else:
            role = "user"
            blocks = [{"type": "text", "text": message.content}]

        # Consecutive same-role turns are merged; tool results share one user turn.
        if output and output[-1]["role"] == role:
            output[-1]["content"].extend(blocks)
        else:
            output.append({"role": role, "content": blocks})
    return output


def _decode_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("llm_response event=bad_tool_arguments raw=%s", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}
