"""Anthropic client wrapper: circuit breaker, model fallback and retries.

``LLMClient.complete()`` is the only place the hosted model is called. It

1. short-circuits with ``LLMUnavailable`` when no key is configured or the
   circuit breaker is open (no network I/O in either case),
2. walks the configured model list via ``coinsight.retry``,
3. converts exhausted saturation into ``UpstreamCapacity`` /
   ``UpstreamRateLimited`` and opens the breaker on capacity,
4. converts SDK timeouts into ``UpstreamTimeout``.

The Anthropic client is lazy-initialised so that the class can be
instantiated in tests without requiring a live API key.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Sequence

import anthropic

from coinsight.circuit_breaker import CircuitBreaker
from coinsight.errors import (
    LLMUnavailable,
    UpstreamCapacity,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from coinsight.retry import RetriesExhausted, RetryPolicy, call_with_model_fallback

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Raw text returned by the model plus the model that produced it."""

    text: str
    model: str


class LLMClient:
    """Calls the hosted model with the unified retry policy.

    Args:
        settings: Application configuration.
        breaker: Circuit breaker to consult and trip; a fresh one is created
            from ``settings.llm_cooldown_seconds`` when omitted.
        sleep: Sleep function used between retries (injectable for tests).
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        settings: Settings,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings
        self.breaker = breaker or CircuitBreaker(settings.llm_cooldown_seconds)
        self.policy = RetryPolicy(
            max_retries=settings.llm_max_retries,
            initial_delay=settings.llm_initial_delay,
            factor=settings.llm_backoff_factor,
            jitter=settings.llm_jitter,
            max_delay=settings.llm_max_delay,
        )
        self._sleep = sleep
        self._rng = rng
        self._client: object = None  # Lazy-initialised anthropic.Anthropic

    @property
    def client(self) -> object:
        """Lazy-initialise and return the Anthropic SDK client."""
        if self._client is None:
            # Retries are owned by coinsight.retry, not the SDK.
            self._client = anthropic.Anthropic(
                api_key=self.settings.anthropic_api_key,
                max_retries=0,
            )
        return self._client

    @property
    def configured(self) -> bool:
        return bool(self.settings.anthropic_api_key)

    def complete(
        self,
        system: str,
        messages: list[dict[str, str]],
        *,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        timeout: Optional[float] = None,
        models: Optional[Sequence[str]] = None,
    ) -> LLMResponse:
        """Send one conversation to the model and return its text.

        Args:
            system: System prompt.
            messages: Anthropic-style ``{"role", "content"}`` messages.
            max_tokens: Completion budget.
            temperature: Sampling temperature.
            timeout: Per-attempt timeout in seconds.
            models: Override for the configured fallback order.

        Raises:
            LLMUnavailable: No API key, or the circuit breaker is open.
            UpstreamCapacity: Capacity errors outlasted every retry.
            UpstreamRateLimited: Rate-limit errors outlasted every retry.
            UpstreamTimeout: The call timed out.
            anthropic.APIError: Any other (non-retryable) API failure.
        """
        if not self.configured:
            raise LLMUnavailable("ANTHROPIC_API_KEY is not configured")
        if not self.breaker.allow_call():
            logger.info("Skipping LLM call: circuit open")
            raise LLMUnavailable("LLM circuit breaker is open")

        model_order = list(models or self.settings.llm_models)

        request: dict = {
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": messages,
        }
        if timeout is not None:
            request["timeout"] = timeout

        def attempt(model: str) -> str:
            logger.info("Calling LLM model=%s", model)
            response = self.client.messages.create(model=model, **request)
            return _response_text(response)

        try:
            text, model = call_with_model_fallback(
                model_order, attempt, self.policy, sleep=self._sleep, rng=self._rng
            )
        except RetriesExhausted as exc:
            logger.error("All LLM attempts failed: %s", exc)
            if exc.saw_capacity:
                self.breaker.record_failure()
                raise UpstreamCapacity(str(exc.last_error)) from exc
            raise UpstreamRateLimited(str(exc.last_error)) from exc
        except anthropic.APITimeoutError as exc:
            logger.error("LLM call timed out after %ss", timeout)
            raise UpstreamTimeout(str(exc)) from exc

        self.breaker.record_success()
        return LLMResponse(text=text, model=model)


def _response_text(response: object) -> str:
    """Concatenate the text blocks of an Anthropic ``Message``."""
    parts: list[str] = []
    for block in getattr(response, "content", None) or []:
        text = getattr(block, "text", None)
        if isinstance(text, str):
            parts.append(text)
    return "".join(parts)
