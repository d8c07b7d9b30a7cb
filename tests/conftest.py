"""Global pytest fixtures and configuration.

This module provides shared fixtures for all tests including:
- Isolation from BLOCK_BUILDER_* environment settings
- Scripted fake connectors (see tests/mocks/connectors.py)
- A backoff sleep that records delays instead of sleeping
- Engine construction over an in-memory state store
"""
from __future__ import annotations

import os
from typing import Any, Callable, Dict

import pytest

from block_builder.config import Config
from block_builder.models.workflow import WorkflowInput
from block_builder.orchestration.engine import WorkflowEngine
from block_builder.orchestration.state_store import InMemoryStateStore
from tests.mocks.connectors import FakeCatalog, FakeDesignSource, FakeGenerator, SleepRecorder


@pytest.fixture(autouse=True)
def clear_block_builder_env(monkeypatch):
    """Keep BLOCK_BUILDER_* settings from the developer environment out of tests."""
    for key in list(os.environ):
        if key.startswith("BLOCK_BUILDER_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        state_backend="memory",
        state_dir=tmp_path / "states",
        state_db_path=tmp_path / "states.db",
        max_retries=2,
        retry_initial_delay=1.0,
        retry_max_delay=10.0,
        retry_backoff_multiplier=2.0,
        call_timeout=5.0,
        circuit_breaker_threshold=5,
        circuit_breaker_reset_timeout=60.0,
        milestone_checkpoints=True,
        checkpoint_retention=10,
        catalog_path=tmp_path / "catalog.json",
    )


@pytest.fixture
def design_source() -> FakeDesignSource:
    return FakeDesignSource()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def workflow_input() -> WorkflowInput:
    return WorkflowInput(name="x", design_ref="R1")


@pytest.fixture
def make_engine(design_source, generator, catalog, store, config, sleep_recorder) -> Callable[..., WorkflowEngine]:
    """Factory building an engine over the shared fakes; keyword overrides win."""

    def _make(**overrides: Any) -> WorkflowEngine:
        kwargs: Dict[str, Any] = {
            "design_source": design_source,
            "generator": generator,
            "catalog": catalog,
            "store": store,
            "config": config,
            "sleep": sleep_recorder,
        }
        kwargs.update(overrides)
        return WorkflowEngine(**kwargs)

    return _make
