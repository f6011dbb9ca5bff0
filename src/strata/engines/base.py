"""LLM client contract and shared types."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from strata.errors import LLMTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class LLMMessage:
    role: str  # "system" | "user" | "assistant"
    content: str


@dataclass
class LLMResponse:
    """Response from an LLM backend."""

    content: str
    finish_reason: str = "stop"  # "stop" | "length"
    max_tokens: int | None = None


@dataclass
class LLMClient:
    """Base class for LLM backends.

    Subclasses implement ``_complete``; ``call`` bounds it by ``timeout`` and
    ``call_with_retry`` grows the output budget while responses are cut off.
    """

    max_tokens: int = 4000
    timeout: float = 120

    @property
    def name(self) -> str:
        return "llm"

    async def _complete(self, messages: list[LLMMessage], max_tokens: int) -> LLMResponse:
        raise NotImplementedError

    async def call(
        self, messages: list[LLMMessage], *, max_tokens: int | None = None
    ) -> LLMResponse:
        budget = max_tokens or self.max_tokens
        try:
            response = await asyncio.wait_for(self._complete(messages, budget), self.timeout)
        except asyncio.TimeoutError:
            raise LLMTimeoutError(self.timeout) from None
        response.max_tokens = budget
        return response

    async def call_with_retry(
        self,
        messages: list[LLMMessage],
        *,
        max_tokens: int | None = None,
        token_step: int = 2000,
        max_tokens_cap: int = 12000,
    ) -> LLMResponse:
        """Call, retrying with ``token_step`` more tokens while truncated.

        Stops once the next budget would exceed ``max_tokens_cap`` and returns
        the last, possibly truncated, response.
        """
        budget = max_tokens or self.max_tokens
        while True:
            response = await self.call(messages, max_tokens=budget)
            if response.finish_reason != "length":
                return response
            if budget + token_step > max_tokens_cap:
                logger.warning("LLM output still truncated at %d tokens, giving up", budget)
                return response
            budget += token_step
            logger.info("LLM output truncated, retrying with max_tokens=%d", budget)
