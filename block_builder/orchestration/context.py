"""Per-run dependencies handed to every stage function."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from ..connectors.base import CatalogConnector, DesignSourceConnector, GenerationConnector
from ..utils.cancellation import CancellationToken
from ..utils.resilience import CircuitBreakerRegistry, call_with_policy
from ..utils.retry import DefaultErrorClassifier, ErrorClassifier, RetryConfig, SleepFunc

T = TypeVar("T")


@dataclass
class RunContext:
    """Connectors plus the call policy shared by one workflow run.

    Attributes:
        design_source: Design content and visual reference provider
        generator: Analysis, generation and validation provider
        catalog: Optional registry for finished blocks
        breakers: One circuit breaker per connector name, shared across runs
        retry_config: Backoff schedule for connector calls
        classifier: Retryability decisions for connector failures
        call_timeout: Per-attempt deadline in seconds
        cancel_token: Cancellation for this run
        sleep: Backoff sleep override (tests)
    """

    design_source: DesignSourceConnector
    generator: GenerationConnector
    catalog: Optional[CatalogConnector] = None
    breakers: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry)
    retry_config: RetryConfig = field(default_factory=RetryConfig)
    classifier: ErrorClassifier = field(default_factory=DefaultErrorClassifier)
    call_timeout: Optional[float] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    sleep: Optional[SleepFunc] = None

    async def call(self, connector: str, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run one connector operation under the retry, breaker and deadline policy."""
        return await call_with_policy(
            func,
            self.retry_config,
            breaker=self.breakers.get(connector),
            classifier=self.classifier,
            timeout=self.call_timeout,
            cancel_token=self.cancel_token,
            sleep=self.sleep,
            name=f"{connector}.{operation}",
        )
