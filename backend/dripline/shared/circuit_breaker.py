"""Failure-window circuit breaker for outbound provider calls.

The Stripe subscription lookup and the email transport each own one breaker.
Failures are counted inside a sliding window; once the window holds
``failure_threshold`` failures the circuit opens and calls are refused until
``recovery_time`` has elapsed. A half-open circuit lets a limited number of
probe calls through: one success closes it, one failure opens it again.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from dripline.infra.metrics import metrics

logger = logging.getLogger(__name__)


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    def __init__(self, name: str, state: CircuitState) -> None:
        super().__init__(f"circuit_{state.value}:{name}")
        self.name = name
        self.state = state


@dataclass(frozen=True)
class CircuitSnapshot:
    name: str
    state: CircuitState
    recent_failures: int


class CircuitBreaker:
    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._probes = 0
        self._state = CircuitState.CLOSED
        metrics.record_circuit_state(self.name, self._state.value)

    @property
    def state(self) -> CircuitState:
        return self._state

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(name=self.name, state=self._state, recent_failures=len(self._failures))

    def reset(self) -> None:
        self._failures.clear()
        self._probes = 0
        self._move_to(CircuitState.CLOSED)

    async def call(
        self,
        fn: Callable[..., Any | Awaitable[Any]],
        *args,
        timeout_seconds: float | None = None,
        **kwargs,
    ) -> Any:
        """Run ``fn`` through the circuit; sync and async callables are both accepted."""
        await self._admit()
        timeout = self.timeout_seconds if timeout_seconds is None else max(0.01, timeout_seconds)
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            await self._on_failure()
            logger.warning(
                "circuit_call_failed",
                extra={
                    "extra": {"circuit": self.name, "state": self._state.value, "reason": type(exc).__name__}
                },
            )
            raise
        await self._on_success()
        return result

    async def _admit(self) -> None:
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at < self.recovery_time:
                    raise CircuitBreakerOpenError(self.name, CircuitState.OPEN)
                self._probes = 0
                self._move_to(CircuitState.HALF_OPEN)
            if self._state == CircuitState.HALF_OPEN:
                if self._probes >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(self.name, CircuitState.HALF_OPEN)
                self._probes += 1

    async def _on_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            self._failures.append(now)
            while self._failures and self._failures[0] < now - self.window_seconds:
                self._failures.popleft()
            tripped = len(self._failures) >= self.failure_threshold
            if self._state == CircuitState.HALF_OPEN or tripped:
                self._opened_at = now
                self._probes = 0
                self._move_to(CircuitState.OPEN)

    async def _on_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            self._probes = 0
            self._move_to(CircuitState.CLOSED)

    def _move_to(self, state: CircuitState) -> None:
        if state == self._state:
            return
        logger.info(
            "circuit_state_changed",
            extra={"extra": {"circuit": self.name, "from": self._state.value, "to": state.value}},
        )
        self._state = state
        metrics.record_circuit_state(self.name, state.value)
