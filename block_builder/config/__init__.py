"""Configuration management using environment variables.

Every field defaults from a ``BLOCK_BUILDER_*`` environment variable. A
``.env`` file is loaded by :meth:`Config.from_env`. There is no process-wide
instance: callers build a ``Config`` and pass it to the engine explicitly.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

from ..utils.resilience import CircuitBreakerConfig
from ..utils.retry import RetryConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "BLOCK_BUILDER_"
STATE_BACKENDS = ("memory", "file", "sqlite")


def _parse_bool(value: Union[str, bool, None]) -> bool:
    """Parse boolean value from various formats."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return value.strip().lower() in ("true", "1", "yes", "on", "enabled")


def _getenv(key: str, default: str = "") -> str:
    """Get prefixed environment variable with default."""
    return os.getenv(ENV_PREFIX + key, default)


def _getenv_int(key: str, default: int) -> int:
    """Get integer environment variable with validation.

    Raises:
        ValueError: If value cannot be parsed as integer
    """
    value = os.getenv(ENV_PREFIX + key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(
            f"Invalid integer value for {ENV_PREFIX}{key}='{value}'. Expected integer"
        ) from e


def _getenv_float(key: str, default: float) -> float:
    """Get float environment variable with validation.

    Raises:
        ValueError: If value cannot be parsed as float
    """
    value = os.getenv(ENV_PREFIX + key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(
            f"Invalid float value for {ENV_PREFIX}{key}='{value}'. Expected float"
        ) from e


def _getenv_optional_float(key: str, default: Optional[float]) -> Optional[float]:
    """Like ``_getenv_float``, but a value of 0 (or below) means disabled and yields None."""
    if not os.getenv(ENV_PREFIX + key):
        return default
    value = _getenv_float(key, 0.0)
    return value if value > 0 else None


@dataclass
class Config:
    """Engine configuration loaded from environment variables."""

    # ========== State Store ==========
    state_backend: str = field(default_factory=lambda: _getenv("STATE_BACKEND", "file").lower())
    state_dir: Path = field(
        default_factory=lambda: Path(_getenv("STATE_DIR", "./.tmp/block-builder-states"))
    )
    state_db_path: Path = field(
        default_factory=lambda: Path(_getenv("STATE_DB_PATH", "./.tmp/block-builder-states.db"))
    )
    milestone_checkpoints: bool = field(
        default_factory=lambda: _parse_bool(_getenv("MILESTONE_CHECKPOINTS", "true"))
    )
    checkpoint_retention: int = field(default_factory=lambda: _getenv_int("CHECKPOINT_RETENTION", 10))

    # ========== Retry Settings ==========
    max_retries: int = field(default_factory=lambda: _getenv_int("MAX_RETRIES", 3))
    retry_initial_delay: float = field(default_factory=lambda: _getenv_float("RETRY_INITIAL_DELAY", 1.0))
    retry_max_delay: float = field(default_factory=lambda: _getenv_float("RETRY_MAX_DELAY", 10.0))
    retry_backoff_multiplier: float = field(
        default_factory=lambda: _getenv_float("RETRY_BACKOFF_MULTIPLIER", 2.0)
    )
    retry_jitter: bool = field(default_factory=lambda: _parse_bool(_getenv("RETRY_JITTER", "false")))

    # ========== Timeout Settings ==========
    call_timeout: Optional[float] = field(default_factory=lambda: _getenv_optional_float("CALL_TIMEOUT", 120.0))

    # ========== Circuit Breaker Settings ==========
    circuit_breaker_threshold: int = field(default_factory=lambda: _getenv_int("CIRCUIT_BREAKER_THRESHOLD", 5))
    circuit_breaker_reset_timeout: float = field(
        default_factory=lambda: _getenv_float("CIRCUIT_BREAKER_RESET_TIMEOUT", 60.0)
    )

    # ========== Engine ==========
    max_transitions: int = field(default_factory=lambda: _getenv_int("MAX_TRANSITIONS", 50))
    catalog_path: Path = field(
        default_factory=lambda: Path(_getenv("CATALOG_PATH", "./.tmp/block-catalog.json"))
    )

    # ========== Logging ==========
    log_level: str = field(default_factory=lambda: _getenv("LOG_LEVEL", "INFO").upper())
    log_file: Optional[Path] = field(
        default_factory=lambda: Path(_getenv("LOG_FILE")) if _getenv("LOG_FILE") else None
    )

    def __post_init__(self) -> None:
        """Validate cross-field constraints."""
        if self.state_backend not in STATE_BACKENDS:
            raise ValueError(
                f"Unknown state backend '{self.state_backend}'. Expected one of {', '.join(STATE_BACKENDS)}"
            )
        if self.checkpoint_retention < 1:
            raise ValueError("checkpoint_retention must be at least 1")
        if self.max_transitions < 1:
            raise ValueError("max_transitions must be at least 1")
        if self.call_timeout is not None and self.call_timeout <= 0:
            raise ValueError("call_timeout must be positive")

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Config":
        """Load a ``.env`` file (if found) without overriding the real environment, then build."""
        candidates = [env_file] if env_file else [Path(".env"), Path.home() / ".block-builder.env"]
        for env_path in candidates:
            if env_path is not None and env_path.exists():
                load_dotenv(env_path, override=False)
                logger.debug(f"Loaded environment from {env_path}")
                break
        return cls()

    def retry_config(self) -> RetryConfig:
        """Build the connector retry policy."""
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay=self.retry_initial_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        """Build the per-connector circuit breaker configuration."""
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_breaker_threshold,
            reset_timeout=self.circuit_breaker_reset_timeout,
        )


__all__ = ["Config", "STATE_BACKENDS"]
