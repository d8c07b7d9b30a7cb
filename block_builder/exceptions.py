"""Exception hierarchy for the block builder engine."""
from __future__ import annotations

from typing import Any, Optional


class BlockBuilderError(Exception):
    """Base class for all block builder errors."""


class WorkflowNotFoundError(BlockBuilderError):
    """Raised when no checkpoint exists for a thread id."""

    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__(f"No workflow checkpoint found for thread '{thread_id}'")


class ThreadBusyError(BlockBuilderError):
    """Raised when starting a run over a thread that is suspended or in progress."""

    def __init__(self, thread_id: str, current_step: str) -> None:
        self.thread_id = thread_id
        self.current_step = current_step
        super().__init__(
            f"Thread '{thread_id}' already holds a workflow at step '{current_step}'. "
            "Resume or recover it, or pass replace=True to start over."
        )


class ResumePayloadError(BlockBuilderError):
    """Raised when a resume payload does not satisfy the expected input kind."""

    def __init__(self, input_type: str, payload: Any) -> None:
        self.input_type = input_type
        self.payload = payload
        super().__init__(
            f"Payload of type {type(payload).__name__} is not valid for input type '{input_type}'"
        )


class StateStoreError(BlockBuilderError):
    """Raised when a state store operation fails."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message)


class WorkflowCancelledError(BlockBuilderError):
    """Raised when a cancellation token fires during a run."""
