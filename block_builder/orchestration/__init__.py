"""Workflow orchestration: stage graph, executor and state persistence."""

from .context import RunContext
from .engine import WorkflowEngine, WorkflowOutcome, WorkflowResult
from .graph import GraphError, apply_update, build_graph, route
from .state_store import (
    FileStateStore,
    InMemoryStateStore,
    SQLiteStateStore,
    StateStore,
    StoredStateInfo,
    diff_states,
    get_state_store,
)

__all__ = [
    "FileStateStore",
    "GraphError",
    "InMemoryStateStore",
    "RunContext",
    "SQLiteStateStore",
    "StateStore",
    "StoredStateInfo",
    "WorkflowEngine",
    "WorkflowOutcome",
    "WorkflowResult",
    "apply_update",
    "build_graph",
    "diff_states",
    "get_state_store",
    "route",
]
