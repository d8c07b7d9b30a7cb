"""Circuit breaker and the combined retry/breaker call policy.

Every connector call made by a workflow stage goes through
:func:`call_with_policy`, which layers a per-attempt deadline, a
per-connector circuit breaker and exponential backoff.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union

from ..exceptions import WorkflowCancelledError
from .cancellation import CancellationToken
from .retry import ErrorClassifier, RetryCallback, RetryConfig, SleepFunc, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Circuit is open, requests fail fast
    HALF_OPEN = "half_open"  # One trial call decides recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Consecutive failures before opening the circuit
        reset_timeout: Seconds after the last failure before a trial call is allowed
        expected_exception_types: Exception types that count as failures
    """

    failure_threshold: int = 5
    reset_timeout: float = 60.0
    expected_exception_types: Tuple[type, ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be non-negative")


class CircuitOpenError(Exception):
    """Raised when the circuit breaker rejects a call without attempting it."""

    retryable = True

    def __init__(self, name: str, failure_count: int, retry_after: float) -> None:
        self.name = name
        self.failure_count = failure_count
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker '{name}' is open after {failure_count} consecutive failures. "
            f"Will allow a trial call in {retry_after:.1f}s"
        )


class CallTimeoutError(TimeoutError):
    """Raised when a single connector call exceeds its deadline."""

    retryable = True

    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(f"{name} timed out after {timeout:.1f}s")


class CircuitBreaker:
    """Per-connector failure isolation state machine.

    ``closed -> open`` after ``failure_threshold`` consecutive failures;
    ``open`` rejects every call until ``reset_timeout`` has elapsed since the
    last failure; then ``half_open`` admits exactly one trial call whose
    outcome closes or reopens the circuit.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._lock = Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def _retry_after(self) -> float:
        if self._last_failure_time is None:
            return 0.0
        elapsed = self._clock() - self._last_failure_time
        return max(0.0, self.config.reset_timeout - elapsed)

    def _acquire(self) -> None:
        """Admit or reject a call, moving open -> half_open when the window has passed.

        Raises:
            CircuitOpenError: If the call must not be attempted
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                if self._retry_after() > 0:
                    raise CircuitOpenError(self.name, self._failure_count, self._retry_after())
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info(f"Circuit breaker '{self.name}' entering half-open state")
                return

            # HALF_OPEN: only the single trial call may proceed
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, self._failure_count, 0.0)
            self._trial_in_flight = True

    def _record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker '{self.name}' closed after successful trial call")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._trial_in_flight = False

    def _record_failure(self, exception: BaseException) -> None:
        with self._lock:
            counted = isinstance(exception, self.config.expected_exception_types) and not isinstance(
                exception, WorkflowCancelledError
            )
            if not counted:
                # A cancelled or ignored trial leaves the breaker half-open for the next caller
                self._trial_in_flight = False
                return

            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._trial_in_flight = False
                logger.warning(f"Circuit breaker '{self.name}' reopened after failed trial call")
            elif self._failure_count >= self.config.failure_threshold and self._state != CircuitState.OPEN:
                self._state = CircuitState.OPEN
                logger.warning(
                    f"Circuit breaker '{self.name}' opened after {self._failure_count} failures. "
                    f"Will attempt recovery in {self.config.reset_timeout}s"
                )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute an async function with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is open (``func`` is not called)
            Exception: Any exception raised by ``func``
        """
        self._acquire()
        try:
            result = await func(*args, **kwargs)
        except BaseException as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to closed."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._trial_in_flight = False

    def get_state(self) -> Dict[str, Union[str, int, float]]:
        """Get current circuit breaker state information."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.config.failure_threshold,
                "reset_timeout": self.config.reset_timeout,
                "time_until_retry": self._retry_after() if self._state == CircuitState.OPEN else 0.0,
            }


class CircuitBreakerRegistry:
    """One breaker per connector name, created on first use."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, self.config, clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def states(self) -> Dict[str, Dict[str, Union[str, int, float]]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.get_state() for b in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()


async def call_with_policy(
    func: Callable[[], Awaitable[T]],
    retry_config: RetryConfig,
    breaker: Optional[CircuitBreaker] = None,
    classifier: Optional[ErrorClassifier] = None,
    timeout: Optional[float] = None,
    cancel_token: Optional[CancellationToken] = None,
    sleep: Optional[SleepFunc] = None,
    on_retry: Optional[RetryCallback] = None,
    name: Optional[str] = None,
) -> T:
    """Call ``func`` under a deadline, a circuit breaker and a retry policy.

    Each attempt is admitted by the breaker and bounded by ``timeout``; an
    expired deadline raises :class:`CallTimeoutError`, which the default
    classifier treats as transient. :class:`CircuitOpenError` and
    cancellation are never retried.

    Raises:
        RetryExhaustedError: If every attempt failed with a retryable error
        CircuitOpenError: If the breaker rejected the call
        WorkflowCancelledError: If ``cancel_token`` fired
        Exception: The first non-retryable error
    """
    call_name = name or (breaker.name if breaker is not None else getattr(func, "__name__", "call"))

    async def _guarded() -> T:
        if timeout is None:
            return await func()
        try:
            return await asyncio.wait_for(func(), timeout=timeout)
        except asyncio.TimeoutError as e:
            if isinstance(e, CallTimeoutError):
                raise
            raise CallTimeoutError(call_name, timeout) from e

    async def _attempt() -> T:
        if breaker is None:
            return await _guarded()
        return await breaker.call(_guarded)

    return await call_with_retry(
        _attempt,
        retry_config,
        classifier=classifier,
        cancel_token=cancel_token,
        sleep=sleep,
        on_retry=on_retry,
        func_name=call_name,
        no_retry=(CircuitOpenError, WorkflowCancelledError),
    )


__all__ = [
    "CallTimeoutError",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "call_with_policy",
]
