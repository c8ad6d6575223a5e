# =============================================================================
# Multi-Provider LLM Abstraction — Completions and Function Decisions
# =============================================================================
#
# Provides a common interface for LLM calls, with concrete implementations
# for Anthropic (Claude) and OpenAI-compatible APIs (OpenAI, DeepSeek,
# Qwen, ...).
#
# Two operations:
#   complete() → free text (knowledge answers)
#   decide()   → either final text or ONE function call from the catalog
#                (native tool use / function calling)
#
# DESIGN DECISION: Protocol (structural typing) over ABC, matching
# EmbeddingProvider in embedder.py. Tests pass any object with the right
# async methods.
#
# DESIGN DECISION: Native SDKs over LangChain wrappers. Tool-use payloads
# differ between vendors (Anthropic `tool_use` blocks with a dict input,
# OpenAI `tool_calls` with a JSON-string argument), and both are
# normalised here into ToolCall so the orchestration loop never sees them.
#
# DESIGN DECISION: Tool definitions arrive provider-neutral
# ({name, description, parameters}) and are reshaped per vendor.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   ├── OpenAICompatibleProvider — Any OpenAI-compatible API
#   └── get_llm_provider()       — Singleton factory, reads from config
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from app.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Standardised free-text response from any provider."""

    content: str           # The generated text
    model: str             # Model identifier
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


@dataclass
class ToolCall:
    """A single function the model asked to invoke."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass
class ModelDecision:
    """
    Outcome of one decide() call.

    Exactly one of `text` (final answer) or `tool_call` is meaningful:
    when `tool_call` is set, `text` holds any preamble the model wrote.
    """

    text: str
    tool_call: ToolCall | None
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def wants_tool(self) -> bool:
        return self.tool_call is not None


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    messages are dicts with "role" ("user" | "assistant") and "content";
    the system prompt is passed separately because Anthropic takes it as a
    top-level kwarg while OpenAI takes it as the first message.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        ...

    async def decide(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelDecision:
        """
        Ask the model to answer or pick one function.

        Args:
            tools: Neutral definitions {name, description, parameters}.
                None or empty disables function calling for this turn.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": (
                self._temperature if temperature is None else temperature
            ),
        }
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        return LLMResponse(
            content=_anthropic_text(response.content),
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def decide(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelDecision:
        """Answer or select one tool via Claude's native tool use."""
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [
                {
                    "name": tool["name"],
                    "description": tool["description"],
                    "input_schema": tool["parameters"],
                }
                for tool in tools
            ]

        response = await self._client.messages.create(**kwargs)

        tool_call = None
        for block in response.content:
            if block.type == "tool_use":
                tool_call = ToolCall(
                    name=block.name,
                    arguments=dict(block.input or {}),
                    call_id=block.id,
                )
                break

        return ModelDecision(
            text=_anthropic_text(response.content),
            tool_call=tool_call,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=_with_system(messages, system),
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )
        input_tokens, output_tokens = _openai_usage(response)

        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def decide(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelDecision:
        """Answer or select one function via OpenAI function calling."""
        kwargs: dict = {
            "model": self._model,
            "messages": _with_system(messages, system),
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        if tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool["name"],
                        "description": tool["description"],
                        "parameters": tool["parameters"],
                    },
                }
                for tool in tools
            ]

        response = await self._client.chat.completions.create(**kwargs)
        message = response.choices[0].message

        tool_call = None
        if message.tool_calls:
            first = message.tool_calls[0]
            tool_call = ToolCall(
                name=first.function.name,
                arguments=_parse_arguments(first.function.arguments),
                call_id=first.id,
            )

        input_tokens, output_tokens = _openai_usage(response)
        return ModelDecision(
            text=message.content or "",
            tool_call=tool_call,
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

# Lazy singleton — avoid re-creating client on every request
_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Factory that returns the configured LLM provider.

    Reads `llm_provider` from settings:
    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider

    Raises:
        ValueError: If the selected provider has no API key.
    """
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            _provider = OpenAICompatibleProvider()
        else:
            _provider = AnthropicProvider()
    return _provider


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _anthropic_text(blocks) -> str:
    return "".join(block.text for block in blocks if block.type == "text")


def _with_system(
    messages: list[dict[str, str]],
    system: str | None,
) -> list[dict[str, str]]:
    # OpenAI: system prompt goes as the first message
    all_messages: list[dict[str, str]] = []
    if system:
        all_messages.append({"role": "system", "content": system})
    all_messages.extend(messages)
    return all_messages


def _openai_usage(response) -> tuple[int, int]:
    usage = response.usage
    if not usage:
        return 0, 0
    return usage.prompt_tokens, usage.completion_tokens


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    """Decode OpenAI's JSON-string arguments; bad JSON becomes {}."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Model returned malformed function arguments: %r", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}
