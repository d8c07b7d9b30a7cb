"""Retry utilities with exponential backoff for connector calls."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, Tuple, TypeVar, runtime_checkable

from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, Exception, float], None]


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Retries after the initial attempt (total attempts = max_retries + 1)
        initial_delay: Delay in seconds before the first retry
        backoff_multiplier: Factor applied to the delay after each retry
        max_delay: Ceiling for any single delay in seconds
        jitter: Add up to 25% random jitter below the computed delay. Off by
            default because it makes the delay sequence non-monotonic.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    jitter: bool = False

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be non-negative")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

        if self.max_retries > 10:
            raise ValueError("max_retries should not exceed 10 for practical purposes")
        if self.max_delay > 300:  # 5 minutes
            raise ValueError("max_delay should not exceed 300 seconds for practical purposes")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delays(self) -> List[float]:
        """Return the full backoff schedule, one entry per retry."""
        return list(iter_delays(self))


def iter_delays(config: RetryConfig) -> Iterable[float]:
    """Yield ``delay_0 = initial_delay``, ``delay_n+1 = min(delay_n * multiplier, max_delay)``."""
    delay = min(config.initial_delay, config.max_delay)
    for _ in range(config.max_retries):
        if config.jitter:
            yield max(0.0, delay - random.uniform(0, delay * 0.25))
        else:
            yield delay
        delay = min(delay * config.backoff_multiplier, config.max_delay)


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        attempts: Number of attempts made
        last_exception: The final exception that caused the retry to fail
        delays: Delays slept between attempts, in order
    """

    def __init__(self, attempts: int, last_exception: Exception, delays: List[float]) -> None:
        self.attempts = attempts
        self.last_exception = last_exception
        self.delays = delays
        super().__init__(
            f"Retry exhausted after {attempts} attempts over {sum(delays):.2f}s. "
            f"Last error: {last_exception}"
        )


@runtime_checkable
class ErrorClassifier(Protocol):
    """Decides whether a failed call is worth retrying."""

    def is_retryable(self, exception: BaseException) -> bool:
        ...


class DefaultErrorClassifier:
    """Classify errors by explicit flag, exception type and HTTP status.

    Order of precedence:
        1. A ``retryable`` attribute on the exception (set by connector errors)
        2. An HTTP-like ``response.status_code`` or ``status_code``
        3. Membership in ``retriable_exceptions``
    """

    RETRIABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

    def __init__(
        self,
        retriable_exceptions: Tuple[type, ...] = (
            ConnectionError,
            TimeoutError,
            asyncio.TimeoutError,
        ),
    ) -> None:
        self.retriable_exceptions = retriable_exceptions

    def is_retryable(self, exception: BaseException) -> bool:
        flag = getattr(exception, "retryable", None)
        if isinstance(flag, bool):
            return flag

        status_code = _status_code(exception)
        if status_code is not None:
            if status_code in self.RETRIABLE_STATUS_CODES:
                return True
            if 400 <= status_code < 500:
                return False

        return isinstance(exception, self.retriable_exceptions)


class PatternErrorClassifier:
    """Classify errors by case-insensitive substrings of the message or type name.

    Useful for connectors that only surface plain text failures. Falls back
    to ``fallback`` when no pattern matches.
    """

    def __init__(
        self,
        patterns: Iterable[str],
        fallback: Optional[ErrorClassifier] = None,
    ) -> None:
        self.patterns = tuple(p.lower() for p in patterns)
        self.fallback = fallback

    def is_retryable(self, exception: BaseException) -> bool:
        haystack = f"{type(exception).__name__} {exception}".lower()
        if any(pattern in haystack for pattern in self.patterns):
            return True
        if self.fallback is not None:
            return self.fallback.is_retryable(exception)
        return False


def _status_code(exception: BaseException) -> Optional[int]:
    response = getattr(exception, "response", None)
    code = getattr(response, "status_code", None)
    if code is None:
        code = getattr(exception, "status_code", None)
    return code if isinstance(code, int) else None


def _log_retry_attempt(func_name: str, attempt: int, max_attempts: int) -> None:
    if attempt > 0:
        logger.info(f"Retry attempt {attempt + 1}/{max_attempts} for {func_name}")


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    classifier: Optional[ErrorClassifier] = None,
    cancel_token: Optional[CancellationToken] = None,
    sleep: Optional[SleepFunc] = None,
    on_retry: Optional[RetryCallback] = None,
    func_name: Optional[str] = None,
    no_retry: Tuple[type, ...] = (),
) -> T:
    """Await ``func`` until it succeeds, backing off between retryable failures.

    Args:
        func: Zero-argument coroutine factory, invoked once per attempt
        config: Backoff schedule
        classifier: Decides retryability (``DefaultErrorClassifier`` if None)
        cancel_token: Aborts the loop, including mid-sleep
        sleep: Override for the backoff sleep (tests record delays with it)
        on_retry: Called with (attempt_number, exception, delay) before sleeping
        func_name: Name used in log messages
        no_retry: Exception types that always propagate immediately

    Returns:
        The first successful result

    Raises:
        RetryExhaustedError: If every attempt failed with a retryable error
        Exception: The original exception if it is not retryable
    """
    classifier = classifier or DefaultErrorClassifier()
    name = func_name or getattr(func, "__name__", "call")
    if sleep is None:
        sleep = cancel_token.sleep if cancel_token is not None else asyncio.sleep

    schedule = config.delays()
    applied: List[float] = []
    last_exception: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            _log_retry_attempt(name, attempt, config.max_attempts)
            return await func()
        except no_retry:
            raise
        except Exception as e:
            last_exception = e

            if not classifier.is_retryable(e):
                logger.error(f"Non-retriable exception in {name}: {e}")
                raise

            if attempt + 1 >= config.max_attempts:
                logger.error(f"All retry attempts exhausted for {name}: {e}")
                break

            delay = schedule[attempt]
            logger.warning(
                f"Attempt {attempt + 1}/{config.max_attempts} failed for {name}: {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            if on_retry is not None:
                on_retry(attempt + 1, e, delay)
            await sleep(delay)
            applied.append(delay)

    raise RetryExhaustedError(
        config.max_attempts, last_exception or Exception("Unknown error"), applied
    )


__all__ = [
    "DefaultErrorClassifier",
    "ErrorClassifier",
    "PatternErrorClassifier",
    "RetryConfig",
    "RetryExhaustedError",
    "call_with_retry",
    "iter_delays",
]
