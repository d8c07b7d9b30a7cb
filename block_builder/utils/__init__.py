"""Utility modules for the block builder engine."""

from .cancellation import CancellationToken
from .resilience import (
    CallTimeoutError,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
    call_with_policy,
)
from .retry import (
    DefaultErrorClassifier,
    ErrorClassifier,
    PatternErrorClassifier,
    RetryConfig,
    RetryExhaustedError,
    call_with_retry,
)

__all__ = [
    "CallTimeoutError",
    "CancellationToken",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "DefaultErrorClassifier",
    "ErrorClassifier",
    "PatternErrorClassifier",
    "RetryConfig",
    "RetryExhaustedError",
    "call_with_policy",
    "call_with_retry",
]
