"""
Circuit breaker implementation for identity provider calls.

This module provides a wrapper around aiobreaker so that a failing Microsoft
Graph or ARM endpoint is not hammered by every queued reconciliation pass.
It integrates with Prometheus metrics to track the circuit state.
"""

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import aiobreaker
from aiobreaker.state import CircuitHalfOpenState, CircuitOpenState
from opentelemetry import trace

from aadpi_terminator.observability.metrics import CIRCUIT_BREAKER_STATE

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class _MetricsListener(aiobreaker.CircuitBreakerListener):
    def __init__(self, name: str):
        self.name = name

    def state_change(self, breaker, old, new):
        try:
            old_name = getattr(old, "name", type(old).__name__)
            new_name = getattr(new, "name", type(new).__name__)
            logger.warning(
                f"Circuit breaker {self.name} state changed: {old_name} -> {new_name}"
            )

            # 0 = closed, 1 = open, 2 = half-open
            state_value = 0
            if isinstance(new, CircuitOpenState):
                state_value = 1
            elif isinstance(new, CircuitHalfOpenState):
                state_value = 2
            CIRCUIT_BREAKER_STATE.labels(breaker=self.name).set(state_value)
        except Exception as e:
            logger.error(f"Error in circuit breaker listener: {e}")


class IdentityProviderCircuitBreaker:
    """
    Circuit breaker wrapper for identity provider requests.

    Every exception raised inside ``call`` counts as a failure, so callers
    let only provider-side failures (5xx, 429, transport errors) escape the
    wrapped function and interpret client errors afterwards.
    """

    def __init__(self, name: str, fail_max: int, timeout_duration: int):
        """
        Initialize circuit breaker.

        Args:
            name: Breaker name used in logs and metrics
            fail_max: Number of failures before opening the circuit
            timeout_duration: Seconds to wait before attempting recovery (half-open)
        """
        self.name = name
        self._breaker = aiobreaker.CircuitBreaker(
            fail_max=fail_max,
            timeout_duration=timedelta(seconds=timeout_duration),
            listeners=[_MetricsListener(name)],
        )
        CIRCUIT_BREAKER_STATE.labels(breaker=name).set(0)

    async def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Call a coroutine function with circuit breaker protection.

        Raises:
            aiobreaker.CircuitBreakerError: If the circuit is open
            Exception: Whatever the function raises
        """
        with tracer.start_as_current_span("circuit_breaker_call") as span:
            span.set_attribute("circuit_breaker.name", self.name)
            span.set_attribute("circuit_breaker.state", self.current_state)

            try:
                return await self._breaker.call_async(func, *args, **kwargs)
            except aiobreaker.CircuitBreakerError:
                span.set_attribute("error", True)
                span.set_attribute("circuit_breaker.error", "open")
                raise
            except Exception as e:
                span.set_attribute("error", True)
                span.record_exception(e)
                raise

    @property
    def current_state(self) -> str:
        """Get current state name (lowercase)."""
        return self._breaker.current_state.name.lower()
