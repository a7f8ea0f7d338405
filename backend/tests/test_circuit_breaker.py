import asyncio

import pytest

from dripline.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _fail():
    raise RuntimeError("provider down")


async def _ok():
    return "ok"


async def _slow():
    await asyncio.sleep(0.2)
    return "late"


@pytest.mark.anyio
async def test_circuit_opens_after_threshold_failures():
    breaker = CircuitBreaker(name="stripe", failure_threshold=2, recovery_time=30, clock=FakeClock())
    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        await breaker.call(_ok)
    assert exc_info.value.name == "stripe"
    assert str(exc_info.value) == "circuit_open:stripe"


@pytest.mark.anyio
async def test_failures_outside_window_do_not_trip():
    clock = FakeClock()
    breaker = CircuitBreaker(name="email", failure_threshold=2, window_seconds=10, clock=clock)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    clock.now += 11
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.snapshot().recent_failures == 1


@pytest.mark.anyio
async def test_half_open_success_closes_circuit():
    clock = FakeClock()
    breaker = CircuitBreaker(name="stripe", failure_threshold=1, recovery_time=5, clock=clock)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    clock.now += 6
    assert await breaker.call(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.snapshot().recent_failures == 0


@pytest.mark.anyio
async def test_half_open_failure_reopens_circuit():
    clock = FakeClock()
    breaker = CircuitBreaker(name="stripe", failure_threshold=3, recovery_time=5, clock=clock)
    for _ in range(3):
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
    clock.now += 6
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(_ok)


@pytest.mark.anyio
async def test_half_open_limits_probe_calls():
    clock = FakeClock()
    breaker = CircuitBreaker(
        name="stripe", failure_threshold=1, recovery_time=5, half_open_max_calls=1, clock=clock
    )
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    clock.now += 6

    release = asyncio.Event()

    async def _probe():
        await release.wait()
        return "probe"

    probe = asyncio.create_task(breaker.call(_probe))
    for _ in range(3):
        await asyncio.sleep(0)
    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        await breaker.call(_ok)
    assert exc_info.value.state == CircuitState.HALF_OPEN
    release.set()
    assert await probe == "probe"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.anyio
async def test_timeout_counts_as_failure():
    breaker = CircuitBreaker(name="email", failure_threshold=1, timeout_seconds=0.01, clock=FakeClock())
    with pytest.raises(asyncio.TimeoutError):
        await breaker.call(_slow)
    assert breaker.state == CircuitState.OPEN


@pytest.mark.anyio
async def test_per_call_timeout_override():
    breaker = CircuitBreaker(name="email", failure_threshold=5, timeout_seconds=0.01, clock=FakeClock())
    assert await breaker.call(_slow, timeout_seconds=1) == "late"


@pytest.mark.anyio
async def test_sync_callables_and_reset():
    breaker = CircuitBreaker(name="stripe", failure_threshold=1, clock=FakeClock())
    assert await breaker.call(lambda value: value * 2, 21) == 42

    def _boom():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        await breaker.call(_boom)
    assert breaker.state == CircuitState.OPEN
    breaker.reset()
    assert breaker.snapshot().state == CircuitState.CLOSED
    assert await breaker.call(_ok) == "ok"
