"""Data models for the block builder workflow."""

from .workflow import (
    AwaitingInput,
    Checkpoint,
    ContentField,
    DesignContext,
    DesignMetadata,
    DesignTokens,
    GeneratedArtifacts,
    InputType,
    StructureAnalysis,
    ValidationResult,
    VisualReference,
    WorkflowError,
    WorkflowInput,
    WorkflowOptions,
    WorkflowState,
    WorkflowStep,
    utc_now,
)

__all__ = [
    "AwaitingInput",
    "Checkpoint",
    "ContentField",
    "DesignContext",
    "DesignMetadata",
    "DesignTokens",
    "GeneratedArtifacts",
    "InputType",
    "StructureAnalysis",
    "ValidationResult",
    "VisualReference",
    "WorkflowError",
    "WorkflowInput",
    "WorkflowOptions",
    "WorkflowState",
    "WorkflowStep",
    "utc_now",
]
