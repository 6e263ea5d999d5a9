# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable Generation Backend
# =============================================================================
#
# Common interface for chat completions used by the answer synthesizer.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   │   └── complete()           — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider — OpenAI, DeepSeek, Qwen, GLM, ...
#   │   └── complete()           — system prompt as first message
#   └── get_llm_provider()       — Singleton factory, reads from config
#
# DESIGN DECISION: Native SDKs over LangChain wrappers. Fewer layers, direct
# control over request parameters, readable stack traces.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from docrag.config import settings

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Normalised completion from any provider."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int


class LLMProvider(Protocol):
    """Anything with an async `complete()` of this shape."""

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: Dicts with "role" ("user"/"assistant") and "content".
            system: System prompt. Anthropic takes it as a kwarg, OpenAI as
                a leading {"role": "system"} message.
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).
        """
        ...


class AnthropicProvider:
    """Claude through `AsyncAnthropic`."""

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
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        content = "".join(
            block.text for block in response.content if block.type == "text"
        )
        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


class OpenAICompatibleProvider:
    """
    Any API that speaks the OpenAI chat completions protocol.

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
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )

        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Lazy singleton for the configured provider.

    "openai_compatible" → OpenAICompatibleProvider, anything else →
    AnthropicProvider.
    """
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            _provider = OpenAICompatibleProvider()
        else:
            _provider = AnthropicProvider()
    return _provider
