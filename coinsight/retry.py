"""Retry with exponential backoff and ordered model fallback.

One policy serves every LLM call site. A failure is *retryable* when it
signals saturation of the hosted service:

- ``capacity``:   HTTP 503/529, "over capacity", "overloaded"
- ``rate_limit``: HTTP 429, "rate limit"

Anything else aborts the loop immediately and propagates unchanged.

Exceptions are inspected by duck typing (``status_code`` / ``status``
attributes and the message text) so this module does not depend on any SDK.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

CAPACITY = "capacity"
RATE_LIMIT = "rate_limit"

_CAPACITY_STATUSES = frozenset([503, 529])
_CAPACITY_PHRASES = ("over capacity", "overloaded")
_RATE_LIMIT_PHRASES = ("rate limit", "rate_limit", "too many requests")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters shared by all LLM call sites."""

    max_retries: int = 3
    initial_delay: float = 1.5
    factor: float = 2.0
    jitter: float = 0.2
    max_delay: float = 20.0

    def delay(self, retry_index: int, rng: Optional[random.Random] = None) -> float:
        """Seconds to wait before retry number *retry_index* (0-based)."""
        rng = rng or random
        base = self.initial_delay * (self.factor ** retry_index)
        spread = rng.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return min(self.max_delay, base * spread)


class RetriesExhausted(Exception):
    """Every attempt failed with a retryable error.

    Attributes:
        kind: ``"capacity"`` or ``"rate_limit"`` of the last failure.
        attempts: list of ``(model, kind)`` tuples in the order tried.
        last_error: the final underlying exception.
    """

    def __init__(self, kind: str, attempts: list[tuple[str, str]], last_error: BaseException) -> None:
        self.kind = kind
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{kind} errors on all attempts: {last_error}")

    @property
    def saw_capacity(self) -> bool:
        return any(kind == CAPACITY for _, kind in self.attempts)


def classify_failure(exc: BaseException) -> Optional[str]:
    """Return ``"capacity"``, ``"rate_limit"`` or ``None`` for non-retryable errors."""
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if status == 429:
        return RATE_LIMIT
    if status in _CAPACITY_STATUSES:
        return CAPACITY

    message = str(exc).lower()
    if any(phrase in message for phrase in _CAPACITY_PHRASES):
        return CAPACITY
    if any(phrase in message for phrase in _RATE_LIMIT_PHRASES):
        return RATE_LIMIT
    return None


def call_with_model_fallback(
    models: Sequence[str],
    fn: Callable[[str], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
) -> tuple[T, str]:
    """Call ``fn(model)`` until it succeeds, walking the model list on saturation.

    The attempt budget is ``max(policy.max_retries + 1, len(models))``.
    Attempt *i* uses ``models[min(i, len(models) - 1)]``: a retryable failure
    advances to the next model, and once the list is exhausted the last model
    is retried. A backoff delay precedes every retry.

    Returns:
        ``(result, model)`` for the first successful attempt.

    Raises:
        ValueError: If *models* is empty.
        RetriesExhausted: If every attempt failed with a retryable error.
        Exception: Any non-retryable error from *fn*, unchanged.
    """
    if not models:
        raise ValueError("At least one model is required.")

    budget = max(policy.max_retries + 1, len(models))
    attempts: list[tuple[str, str]] = []

    for attempt in range(budget):
        model = models[min(attempt, len(models) - 1)]
        try:
            result = fn(model)
        except Exception as exc:
            kind = classify_failure(exc)
            if kind is None:
                raise
            attempts.append((model, kind))
            if attempt + 1 >= budget:
                raise RetriesExhausted(kind, attempts, exc) from exc
            wait = policy.delay(attempt, rng)
            logger.warning(
                "LLM %s error on %s (attempt %d/%d), retrying in %.2fs",
                kind, model, attempt + 1, budget, wait,
            )
            sleep(wait)
        else:
            if attempts:
                logger.info("LLM call succeeded on %s after %d failure(s)", model, len(attempts))
            return result, model

    # The loop always returns or raises.
    raise AssertionError("unreachable")
