"""
Per-service circuit breakers (in-process).

If a collaborator fails N consecutive times, calls to it are refused for a
cool-down window so a tick does not spend its time on repeated slow-path
timeouts. State lives in the worker process; it is an optimisation, never a
source of truth for job state.

Defaults per service:
  extraction  3 failures → open 120 s
  embeddings  5 failures → open  60 s
  vectorstore 3 failures → open  90 s
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from docpipeline.core.errors import PipelineError, ServiceUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CircuitBreaker:
    name:           str
    open_threshold: int   = 3
    reset_seconds:  float = 60.0
    failures:       int   = 0
    open_until:     float = 0.0        # monotonic time after which to retry

    def is_open(self) -> bool:
        if self.failures < self.open_threshold:
            return False
        if time.monotonic() >= self.open_until:
            self.failures = 0          # half-open: let the next call through
            return False
        return True

    def record_failure(self) -> None:
        self.failures  += 1
        self.open_until = time.monotonic() + self.reset_seconds
        if self.failures >= self.open_threshold:
            logger.warning(
                "Circuit breaker open | service=%s failures=%d open_for=%ds",
                self.name, self.failures, self.reset_seconds,
            )

    def record_success(self) -> None:
        self.failures = 0

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Await fn(*args, **kwargs) through the breaker.

        Non-retryable PipelineErrors (bad input, unrecoverable rejections)
        propagate without counting against the service.
        """
        if self.is_open():
            raise ServiceUnavailable(self.name, self.open_until - time.monotonic())
        try:
            result = await fn(*args, **kwargs)
        except PipelineError as exc:
            if exc.retryable:
                self.record_failure()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


_BREAKERS: dict[str, CircuitBreaker] = {
    "extraction":  CircuitBreaker("extraction",  open_threshold=3, reset_seconds=120),
    "embeddings":  CircuitBreaker("embeddings",  open_threshold=5, reset_seconds=60),
    "vectorstore": CircuitBreaker("vectorstore", open_threshold=3, reset_seconds=90),
}


def get_breaker(service: str) -> CircuitBreaker:
    """Return the process-wide breaker for a service, creating it on first use."""
    if service not in _BREAKERS:
        _BREAKERS[service] = CircuitBreaker(service)
    return _BREAKERS[service]


def reset_breakers() -> None:
    """Close every breaker (used by tests and after configuration reloads)."""
    for breaker in _BREAKERS.values():
        breaker.failures = 0
        breaker.open_until = 0.0


def breaker_states() -> dict[str, str]:
    """Snapshot of every breaker as "open" or "closed", for the readiness check."""
    return {
        name: "open" if breaker.is_open() else "closed"
        for name, breaker in sorted(_BREAKERS.items())
    }
