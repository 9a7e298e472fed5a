"""
Circuit breaker guarding the hosted LLM service.

States:
- CLOSED: calls go through.
- OPEN(until): calls are short-circuited without any network I/O until the
  cooldown elapses, after which the breaker closes again on its own.

A single saturation event (capacity errors that survived every retry and
model fallback) is enough to open the breaker.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"


@dataclass
class _BreakerState:
    state: str = CLOSED
    open_until: float = 0.0
    failures: int = 0
    last_failure_ts: float = 0.0


class CircuitBreaker:
    """
    Time-based breaker owned by ``LLMClient``.

    Parameters:
        cooldown_seconds: how long the breaker stays open after a failure.
        clock: monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        cooldown_seconds: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._clock = clock or time.monotonic
        self._state = _BreakerState()
        self._lock = RLock()

    # -----------------------------
    # Public API
    # -----------------------------
    @property
    def state(self) -> str:
        with self._lock:
            self._expire()
            return self._state.state

    def allow_call(self) -> bool:
        """Whether the guarded service may be called right now."""
        with self._lock:
            self._expire()
            return self._state.state == CLOSED

    def record_failure(self) -> None:
        """Open the breaker for ``cooldown_seconds`` starting now."""
        with self._lock:
            now = self._clock()
            self._state.failures += 1
            self._state.last_failure_ts = now
            self._state.state = OPEN
            self._state.open_until = now + self.cooldown_seconds
        logger.warning(
            "LLM circuit opened for %.0fs after a capacity failure", self.cooldown_seconds
        )

    def record_success(self) -> None:
        """Reset the failure counter after a successful call."""
        with self._lock:
            self._expire()
            if self._state.state == CLOSED:
                self._state.failures = 0

    def reset(self) -> None:
        with self._lock:
            self._state = _BreakerState()

    def snapshot(self) -> dict[str, Any]:
        """Return the breaker state for diagnostics."""
        with self._lock:
            self._expire()
            remaining = 0.0
            if self._state.state == OPEN:
                remaining = max(0.0, self._state.open_until - self._clock())
            return {
                "state": self._state.state,
                "failures": self._state.failures,
                "cooldown_remaining": round(remaining, 2),
            }

    # -----------------------------
    # Internal helpers
    # -----------------------------
    def _expire(self) -> None:
        if self._state.state == OPEN and self._clock() >= self._state.open_until:
            logger.info("LLM circuit cooldown elapsed, closing")
            self._state.state = CLOSED
            self._state.open_until = 0.0
