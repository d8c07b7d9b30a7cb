"""Resumable, checkpointed workflow engine for generating content blocks from designs."""

__version__ = "0.3.0"

from .exceptions import (
    BlockBuilderError,
    ResumePayloadError,
    StateStoreError,
    ThreadBusyError,
    WorkflowCancelledError,
    WorkflowNotFoundError,
)
from .models import WorkflowInput, WorkflowOptions, WorkflowState, WorkflowStep
from .orchestration import WorkflowEngine, WorkflowOutcome, WorkflowResult

__all__ = [
    "BlockBuilderError",
    "ResumePayloadError",
    "StateStoreError",
    "ThreadBusyError",
    "WorkflowCancelledError",
    "WorkflowEngine",
    "WorkflowInput",
    "WorkflowNotFoundError",
    "WorkflowOptions",
    "WorkflowOutcome",
    "WorkflowResult",
    "WorkflowState",
    "WorkflowStep",
    "__version__",
]
