"""Tests for block_builder.config."""
from __future__ import annotations

from pathlib import Path

import pytest

from block_builder.config import Config


class TestDefaults:
    def test_defaults_without_environment(self):
        config = Config()
        assert config.state_backend == "file"
        assert config.max_retries == 3
        assert config.retry_initial_delay == 1.0
        assert config.retry_max_delay == 10.0
        assert config.call_timeout == 120.0
        assert config.milestone_checkpoints is True
        assert config.checkpoint_retention == 10
        assert config.log_file is None

    def test_retry_config_mirrors_fields(self):
        retry = Config(max_retries=2, retry_initial_delay=0.5, retry_max_delay=4.0).retry_config()
        assert retry.max_retries == 2
        assert retry.delays() == [0.5, 1.0]

    def test_circuit_breaker_config(self):
        breaker = Config(circuit_breaker_threshold=3, circuit_breaker_reset_timeout=5.0).circuit_breaker_config()
        assert breaker.failure_threshold == 3
        assert breaker.reset_timeout == 5.0


class TestEnvironment:
    def test_prefixed_variables(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BLOCK_BUILDER_STATE_BACKEND", "SQLite")
        monkeypatch.setenv("BLOCK_BUILDER_STATE_DB_PATH", str(tmp_path / "db.sqlite"))
        monkeypatch.setenv("BLOCK_BUILDER_MAX_RETRIES", "5")
        monkeypatch.setenv("BLOCK_BUILDER_RETRY_JITTER", "yes")
        monkeypatch.setenv("BLOCK_BUILDER_MILESTONE_CHECKPOINTS", "off")
        monkeypatch.setenv("BLOCK_BUILDER_LOG_LEVEL", "debug")

        config = Config()

        assert config.state_backend == "sqlite"
        assert config.state_db_path == tmp_path / "db.sqlite"
        assert config.max_retries == 5
        assert config.retry_jitter is True
        assert config.milestone_checkpoints is False
        assert config.log_level == "DEBUG"

    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv("BLOCK_BUILDER_MAX_RETRIES", "three")
        with pytest.raises(ValueError, match="BLOCK_BUILDER_MAX_RETRIES"):
            Config()

    @pytest.mark.parametrize("value", ["0", "-1"])
    def test_non_positive_call_timeout_disables_deadline(self, monkeypatch, value):
        monkeypatch.setenv("BLOCK_BUILDER_CALL_TIMEOUT", value)
        assert Config().call_timeout is None

    def test_call_timeout_from_environment(self, monkeypatch):
        monkeypatch.setenv("BLOCK_BUILDER_CALL_TIMEOUT", "30")
        assert Config().call_timeout == 30.0

    def test_invalid_float(self, monkeypatch):
        monkeypatch.setenv("BLOCK_BUILDER_CALL_TIMEOUT", "soon")
        with pytest.raises(ValueError, match="BLOCK_BUILDER_CALL_TIMEOUT"):
            Config()


class TestValidation:
    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown state backend"):
            Config(state_backend="redis")

    def test_retention_must_be_positive(self):
        with pytest.raises(ValueError):
            Config(checkpoint_retention=0)

    def test_max_transitions_must_be_positive(self):
        with pytest.raises(ValueError):
            Config(max_transitions=0)

    def test_call_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            Config(call_timeout=-1.0)


def _unset_after_test(monkeypatch, *keys: str) -> None:
    """Register keys with monkeypatch so values loaded from .env files are removed on teardown."""
    for key in keys:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


class TestFromEnv:
    def test_loads_env_file(self, monkeypatch, tmp_path):
        _unset_after_test(monkeypatch, "BLOCK_BUILDER_MAX_RETRIES", "BLOCK_BUILDER_STATE_BACKEND")
        env_file = tmp_path / "settings.env"
        env_file.write_text("BLOCK_BUILDER_MAX_RETRIES=7\nBLOCK_BUILDER_STATE_BACKEND=memory\n")

        config = Config.from_env(env_file)

        assert config.max_retries == 7
        assert config.state_backend == "memory"

    def test_real_environment_wins(self, monkeypatch, tmp_path):
        env_file = tmp_path / "settings.env"
        env_file.write_text("BLOCK_BUILDER_MAX_RETRIES=7\n")
        monkeypatch.setenv("BLOCK_BUILDER_MAX_RETRIES", "1")

        assert Config.from_env(env_file).max_retries == 1

    def test_missing_env_file_is_ignored(self, tmp_path):
        config = Config.from_env(Path(tmp_path / "absent.env"))
        assert config.max_retries == 3
