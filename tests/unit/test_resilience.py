"""
Unit Tests — Circuit Breakers
══════════════════════════════
Tests for docpipeline/core/resilience.py
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from docpipeline.core.errors import PageLimitExceeded, ServiceUnavailable
from docpipeline.core.resilience import CircuitBreaker, get_breaker


@pytest.mark.unit
class TestCircuitBreaker:

    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker("svc", open_threshold=2, reset_seconds=60)
        failing = AsyncMock(side_effect=ConnectionError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)

        with pytest.raises(ServiceUnavailable) as exc_info:
            await breaker.call(failing)
        assert failing.await_count == 2
        assert exc_info.value.service == "svc"

    async def test_success_resets_failures(self):
        breaker = CircuitBreaker("svc", open_threshold=2)
        with pytest.raises(ConnectionError):
            await breaker.call(AsyncMock(side_effect=ConnectionError()))
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.failures == 0

    async def test_half_open_after_cool_down(self):
        breaker = CircuitBreaker("svc", open_threshold=1, reset_seconds=0)
        with pytest.raises(ConnectionError):
            await breaker.call(AsyncMock(side_effect=ConnectionError()))
        assert await breaker.call(AsyncMock(return_value=1)) == 1

    async def test_non_retryable_errors_do_not_count(self):
        breaker = CircuitBreaker("svc", open_threshold=1)
        with pytest.raises(PageLimitExceeded):
            await breaker.call(AsyncMock(side_effect=PageLimitExceeded("too many pages")))
        assert breaker.failures == 0
        assert breaker.is_open() is False

    def test_get_breaker_is_process_wide(self):
        assert get_breaker("extraction") is get_breaker("extraction")
        assert get_breaker("new-service").open_threshold == 3
