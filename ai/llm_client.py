"""Generative model client for proposal generation.

Wraps the Anthropic Messages API with tenacity retry on transient errors
(timeouts, rate limits, overload and 5xx). Anything else, or a transient
error that outlives the retry budget, surfaces as ModelCallError so the job
queue's own backoff takes over.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import anthropic
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from engine.config import LLMSettings, settings

logger = logging.getLogger(__name__)


class ModelCallError(Exception):
    """Raised when the model API call fails for good."""
    pass


@dataclass
class ModelResponse:
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class ProposalModelClient(Protocol):
    """Anything that can answer a system prompt plus a message list with text."""

    model: str

    async def complete(self, system: str, messages: list[dict[str, str]]) -> ModelResponse:
        ...


def _is_retryable(exc: BaseException) -> bool:
    """Return True for transient API errors worth retrying."""
    if isinstance(exc, (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError)):
        return True
    if isinstance(exc, anthropic.APIStatusError):
        return exc.status_code in (408, 429) or exc.status_code >= 500
    return False


class AnthropicProposalClient:
    """Async Anthropic client with bounded retry."""

    def __init__(self, config: LLMSettings | None = None, client: anthropic.AsyncAnthropic | None = None) -> None:
        self.config = config or settings.llm
        self.model = self.config.model
        # SDK-level retries are disabled so tenacity owns the retry budget
        self._client = client or anthropic.AsyncAnthropic(
            api_key=self.config.api_key,
            timeout=self.config.timeout_seconds,
            max_retries=0,
        )

    async def complete(self, system: str, messages: list[dict[str, str]]) -> ModelResponse:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.api_max_attempts),
            wait=wait_exponential(
                multiplier=self.config.api_retry_min_seconds,
                min=self.config.api_retry_min_seconds,
                max=self.config.api_retry_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    message = await self._client.messages.create(
                        model=self.model,
                        max_tokens=self.config.max_tokens,
                        temperature=self.config.temperature,
                        system=system,
                        messages=messages,
                    )
        except anthropic.APIError as e:
            logger.error(f"Model call to {self.model} failed: {e}", exc_info=True)
            raise ModelCallError(f"Model call to {self.model} failed: {e}") from e

        text = "".join(block.text for block in message.content if block.type == "text")
        usage = getattr(message, "usage", None)
        return ModelResponse(
            text=text,
            model=message.model or self.model,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )
