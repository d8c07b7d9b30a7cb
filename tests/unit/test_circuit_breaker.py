"""Tests for block_builder.utils.resilience."""
from __future__ import annotations

import asyncio

import pytest

from block_builder.exceptions import WorkflowCancelledError
from block_builder.utils.resilience import (
    CallTimeoutError,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
    call_with_policy,
)
from block_builder.utils.retry import RetryConfig, RetryExhaustedError
from tests.mocks.connectors import SleepRecorder, permanent, transient


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingCall:
    """Async callable that fails while ``failing`` is set."""

    def __init__(self, failing: bool = True) -> None:
        self.failing = failing
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failing:
            raise ConnectionError("service down")
        return "ok"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker("design-source", CircuitBreakerConfig(failure_threshold=3, reset_timeout=30.0), clock=clock)


async def _fail_times(breaker: CircuitBreaker, call: CountingCall, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.call(call)


class TestCircuitBreakerTransitions:
    @pytest.mark.asyncio
    async def test_opens_at_threshold_and_rejects_without_calling(self, breaker):
        call = CountingCall()
        await _fail_times(breaker, call, 3)

        assert breaker.state == CircuitState.OPEN
        assert breaker.failure_count == 3

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(call)
        assert call.calls == 3
        assert exc_info.value.failure_count == 3
        assert exc_info.value.retry_after == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_stays_closed_below_threshold(self, breaker):
        call = CountingCall()
        await _fail_times(breaker, call, 2)
        call.failing = False

        assert await breaker.call(call) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_successful_trial_closes(self, breaker, clock):
        call = CountingCall()
        await _fail_times(breaker, call, 3)

        clock.advance(30.0)
        call.failing = False
        assert await breaker.call(call) == "ok"

        assert call.calls == 4
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_failed_trial_reopens_and_restarts_window(self, breaker, clock):
        call = CountingCall()
        await _fail_times(breaker, call, 3)

        clock.advance(31.0)
        await _fail_times(breaker, call, 1)
        assert breaker.state == CircuitState.OPEN
        assert call.calls == 4

        clock.advance(29.0)
        with pytest.raises(CircuitOpenError):
            await breaker.call(call)
        assert call.calls == 4

        clock.advance(1.0)
        call.failing = False
        assert await breaker.call(call) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_admits_exactly_one_trial(self, breaker, clock):
        call = CountingCall()
        await _fail_times(breaker, call, 3)
        clock.advance(30.0)

        release = asyncio.Event()
        trial_calls = []

        async def slow_trial():
            trial_calls.append(1)
            await release.wait()
            return "recovered"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.call(slow_trial)

        release.set()
        assert await trial == "recovered"
        assert len(trial_calls) == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_leaves_breaker_half_open(self, breaker, clock):
        call = CountingCall()
        await _fail_times(breaker, call, 3)
        clock.advance(30.0)

        async def cancelled():
            raise WorkflowCancelledError("abort")

        with pytest.raises(WorkflowCancelledError):
            await breaker.call(cancelled)
        assert breaker.state == CircuitState.HALF_OPEN

        call.failing = False
        assert await breaker.call(call) == "ok"
        assert breaker.state == CircuitState.CLOSED

    def test_reset_and_state_report(self, breaker):
        breaker._failure_count = 2
        report = breaker.get_state()
        assert report["name"] == "design-source"
        assert report["state"] == "closed"
        assert report["failure_count"] == 2
        assert report["failure_threshold"] == 3

        breaker.reset()
        assert breaker.failure_count == 0

    def test_config_validation(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)
        with pytest.raises(ValueError):
            CircuitBreakerConfig(reset_timeout=-1)


class TestCircuitBreakerRegistry:
    def test_one_breaker_per_name(self):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=2))
        assert registry.get("generator") is registry.get("generator")
        assert registry.get("generator") is not registry.get("catalog")
        assert set(registry.states()) == {"generator", "catalog"}

    @pytest.mark.asyncio
    async def test_reset_all(self):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))
        breaker = registry.get("generator")
        with pytest.raises(ConnectionError):
            await breaker.call(CountingCall())
        assert breaker.state == CircuitState.OPEN

        registry.reset_all()
        assert breaker.state == CircuitState.CLOSED


class TestCallWithPolicy:
    @pytest.mark.asyncio
    async def test_every_attempt_counts_against_breaker(self, clock):
        breaker = CircuitBreaker("generator", CircuitBreakerConfig(failure_threshold=3), clock=clock)
        call = CountingCall()
        sleep = SleepRecorder()

        with pytest.raises(CircuitOpenError):
            await call_with_policy(call, RetryConfig(max_retries=5), breaker=breaker, sleep=sleep)

        # Three real attempts open the circuit; the fourth is rejected and not retried
        assert call.calls == 3
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_exhaustion_below_threshold(self, clock):
        breaker = CircuitBreaker("generator", CircuitBreakerConfig(failure_threshold=5), clock=clock)
        call = CountingCall()

        with pytest.raises(RetryExhaustedError) as exc_info:
            await call_with_policy(call, RetryConfig(max_retries=2), breaker=breaker, sleep=SleepRecorder())

        assert call.calls == 3
        assert exc_info.value.attempts == 3
        assert breaker.failure_count == 3

    @pytest.mark.asyncio
    async def test_deadline_becomes_retryable_timeout(self):
        attempts = []

        async def hangs():
            attempts.append(1)
            await asyncio.sleep(10)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await call_with_policy(hangs, RetryConfig(max_retries=1), timeout=0.01, sleep=SleepRecorder())

        assert len(attempts) == 2
        assert isinstance(exc_info.value.last_exception, CallTimeoutError)

    @pytest.mark.asyncio
    async def test_permanent_error_fails_fast(self):
        attempts = []

        async def unauthorized():
            attempts.append(1)
            raise permanent()

        with pytest.raises(Exception, match="unauthorized"):
            await call_with_policy(unauthorized, RetryConfig(max_retries=3), sleep=SleepRecorder())
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_success_passes_through(self):
        async def works():
            return {"ok": True}

        result = await call_with_policy(
            works,
            RetryConfig(),
            breaker=CircuitBreaker("catalog"),
            timeout=1.0,
        )
        assert result == {"ok": True}

    @pytest.mark.asyncio
    async def test_transient_then_success(self):
        outcomes = [transient(), transient(), "done"]

        async def flaky():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        sleep = SleepRecorder()
        assert await call_with_policy(flaky, RetryConfig(max_retries=3), sleep=sleep) == "done"
        assert sleep.delays == [1.0, 2.0]
