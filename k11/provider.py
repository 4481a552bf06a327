"""LLM Provider abstraction -- LiteLLM backend."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from k11.log import logger
from k11.types import LLMResponse


class LLMProvider(ABC):
    """Abstract LLM provider. Implement for custom backends."""

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str = "",
        max_tokens: int = 0,
        temperature: float = -1.0,
    ) -> LLMResponse: ...


class LiteLLMProvider(LLMProvider):
    """LiteLLM-backed provider (Groq, OpenAI, Anthropic, local OpenAI-compatible servers...).

    Never raises on API failure: after the last retry it returns an
    LLMResponse with finish_reason="error".
    """

    def __init__(
        self,
        model: str,
        api_key: str = "",
        api_base: str = "",
        max_tokens: int = 1024,
        temperature: float = 0.3,
        timeout: float = 15.0,
        max_retries: int = 2,
        retry_base_delay: float = 1.0,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str = "",
        max_tokens: int = 0,
        temperature: float = -1.0,
    ) -> LLMResponse:
        from litellm import acompletion

        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": temperature if temperature >= 0 else self.temperature,
            "timeout": self.timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        max_attempts = max(1, self.max_retries)
        last_error: Exception | None = None
        for attempt in range(max_attempts):
            try:
                resp = await acompletion(**kwargs)
                return self._parse(resp)
            except Exception as e:
                last_error = e
                if attempt < max_attempts - 1:
                    delay = self.retry_base_delay * (2 ** attempt)
                    logger.warning(f"LLM call failed (attempt {attempt + 1}/{max_attempts}): {e}, retrying in {delay}s")
                    await asyncio.sleep(delay)
        logger.error(f"LLM call failed after {max_attempts} attempts: {last_error}")
        return LLMResponse(
            content=f"LLM error: {type(last_error).__name__}: {last_error}",
            finish_reason="error",
        )

    def _parse(self, resp: Any) -> LLMResponse:
        choice = resp.choices[0]
        msg = choice.message
        usage = getattr(resp, "usage", None)
        return LLMResponse(
            content=getattr(msg, "content", None) or "",
            finish_reason=choice.finish_reason or "stop",
            usage=dict(usage) if usage else {},
        )
