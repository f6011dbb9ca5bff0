"""Anthropic API backend for summarization."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from strata.engines.base import LLMClient, LLMMessage, LLMResponse
from strata.errors import ExternalServiceError, LLMTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class AnthropicLLMClient(LLMClient):
    """Direct Anthropic API via the `anthropic` SDK."""

    model: str = "claude-sonnet-4-5-20250929"
    api_key: str | None = None
    temperature: float = 0.2

    def __post_init__(self) -> None:
        try:
            import anthropic
        except ImportError:
            raise ImportError(
                "anthropic package required. Install with: pip install 'strata[api]'"
            )
        self._anthropic = anthropic
        # The SDK enforces its own deadline; ``call`` adds the outer bound.
        self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)

    @property
    def name(self) -> str:
        return "anthropic_api"

    async def _complete(self, messages: list[LLMMessage], max_tokens: int) -> LLMResponse:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        kwargs: dict = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
        }
        if system:
            kwargs["system"] = system

        try:
            response = await asyncio.to_thread(self._client.messages.create, **kwargs)
        except self._anthropic.APITimeoutError:
            raise LLMTimeoutError(self.timeout) from None
        except self._anthropic.APIError as e:
            logger.error("Anthropic API error: %s", e)
            raise ExternalServiceError(f"LLM API error: {e}") from e

        text = "".join(
            block.text for block in (response.content or []) if getattr(block, "type", "") == "text"
        )
        if not text:
            raise ExternalServiceError("LLM response missing content.")
        finish_reason = "length" if response.stop_reason == "max_tokens" else "stop"
        return LLMResponse(content=text, finish_reason=finish_reason)


def build_client(llm_config) -> AnthropicLLMClient:
    return AnthropicLLMClient(
        max_tokens=llm_config.max_tokens,
        timeout=llm_config.timeout,
        model=llm_config.model,
    )
