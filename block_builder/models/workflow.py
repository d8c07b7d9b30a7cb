"""Data models for block builder workflow state.

Every model here round-trips through JSON without loss so that a checkpoint
written by one process can be resumed by another.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_BLOCK_NAME_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def utc_now() -> datetime:
    """Timezone-aware current time used for every timestamp in the state."""
    return datetime.now(timezone.utc)


class WorkflowStep(str, Enum):
    """Stage marker stored in ``WorkflowState.current_step``.

    Each marker names the stage the executor has transitioned into, so a
    checkpoint always identifies where execution continues.
    """

    INITIALIZED = "initialized"
    EXTRACTING_DESIGN = "extracting_design"
    CAPTURING_REFERENCE = "capturing_reference"
    AWAITING_INPUT = "awaiting_input"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    VALIDATING = "validating"
    REGISTERING = "registering"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStep.COMPLETED, WorkflowStep.FAILED)


class InputType(str, Enum):
    """Kind of data a suspended workflow expects on resume."""

    VISUAL_REFERENCE = "visual-reference"
    CONFIRMATION = "confirmation"
    TEXT = "text"


class WorkflowOptions(BaseModel):
    """Named switches controlling optional pipeline behaviour."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    capture_visual_reference: bool = True
    validate_output: bool = True
    strict_validation: bool = False
    persist_artifacts: bool = True
    register_in_catalog: bool = True
    include_metadata: bool = False
    require_validation: bool = False


class WorkflowInput(BaseModel):
    """Immutable request that starts a workflow instance."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Block name (lowercase-hyphenated)")
    design_ref: str = Field(..., min_length=1, description="Design URL or node id")
    output_path: str = "./blocks"
    options: WorkflowOptions = Field(default_factory=WorkflowOptions)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Block names become directory names, so keep them path safe."""
        if not _BLOCK_NAME_PATTERN.match(v):
            raise ValueError(f"Block name must be lowercase-hyphenated, got {v!r}")
        return v

    @field_validator("design_ref")
    @classmethod
    def validate_design_ref(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("A design reference is required")
        return v

    @property
    def block_path(self) -> str:
        return f"{self.output_path.rstrip('/')}/{self.name}"


class DesignContext(BaseModel):
    """Structural content extracted from the design source."""

    model_config = ConfigDict(frozen=True)

    content: str
    reference: str
    file_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class VisualReference(BaseModel):
    """Rendered image of the design, either captured or user supplied."""

    model_config = ConfigDict(frozen=True)

    data: str = Field(..., min_length=1, description="base64 payload or URL")
    format: Literal["png", "jpg"] = "png"
    timestamp: datetime = Field(default_factory=utc_now)


class DesignMetadata(BaseModel):
    """Node metadata reported by the design source."""

    model_config = ConfigDict(frozen=True)

    reference: str
    node_name: str = "Unknown"
    node_type: str = "Unknown"
    structure: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ContentField(BaseModel):
    """One authorable field inferred by the analysis pass."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    label: str
    component: str


class DesignTokens(BaseModel):
    model_config = ConfigDict(frozen=True)

    colors: List[str] = Field(default_factory=list)
    typography: List[str] = Field(default_factory=list)
    spacing: List[str] = Field(default_factory=list)


class StructureAnalysis(BaseModel):
    """Result of the structural analysis stage."""

    model_config = ConfigDict(frozen=True)

    name: str
    block_type: Literal["single", "multi-item"] = "single"
    container_fields: List[ContentField] = Field(default_factory=list)
    item_fields: List[ContentField] = Field(default_factory=list)
    design_tokens: DesignTokens = Field(default_factory=DesignTokens)
    interactive_elements: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)


class GeneratedArtifacts(BaseModel):
    """Files produced by the generation stage, keyed by role (css, javascript, ...)."""

    model_config = ConfigDict(frozen=True)

    output_dir: str
    files: Dict[str, str] = Field(default_factory=dict)

    def total_bytes(self) -> int:
        return sum(len(content.encode("utf-8")) for content in self.files.values())


class ValidationResult(BaseModel):
    """Outcome of validating the generated output."""

    model_config = ConfigDict(frozen=True)

    validated: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    status: Literal["PASSED", "FAILED"] = "PASSED"

    @property
    def passed(self) -> bool:
        return self.status == "PASSED" and not self.errors


class WorkflowError(BaseModel):
    """Classified failure recorded by a stage. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    step: WorkflowStep
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    retryable: bool = False
    requires_user_input: bool = False
    error_type: Optional[str] = None


class AwaitingInput(BaseModel):
    """Descriptor present only while a workflow is suspended."""

    model_config = ConfigDict(frozen=True)

    requested_at: datetime = Field(default_factory=utc_now)
    prompt_message: str
    input_type: InputType
    resume_step: WorkflowStep
    options: List[str] = Field(default_factory=list)


class WorkflowState(BaseModel):
    """Evolving record threaded through every stage.

    Stages never mutate a state in place; they return partial updates that
    the engine merges with :func:`block_builder.orchestration.graph.apply_update`.
    """

    input: WorkflowInput

    design_context: Optional[DesignContext] = None
    visual_reference: Optional[VisualReference] = None
    user_provided_reference: bool = False
    metadata: Optional[DesignMetadata] = None
    analysis: Optional[StructureAnalysis] = None
    generated_artifacts: Optional[GeneratedArtifacts] = None
    validation: Optional[ValidationResult] = None
    catalog_registered: bool = False
    user_notes: List[str] = Field(default_factory=list)

    current_step: WorkflowStep = WorkflowStep.INITIALIZED
    errors: List[WorkflowError] = Field(default_factory=list)
    awaiting_user_input: Optional[AwaitingInput] = None

    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    duration: Optional[float] = None

    @property
    def is_suspended(self) -> bool:
        return self.current_step == WorkflowStep.AWAITING_INPUT

    @property
    def is_terminal(self) -> bool:
        return self.current_step.is_terminal

    @property
    def is_in_progress(self) -> bool:
        return not (self.is_terminal or self.is_suspended)

    def to_json(self) -> str:
        """Serialize state to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowState":
        """Deserialize state from JSON."""
        return cls.model_validate_json(data)


class Checkpoint(BaseModel):
    """Immutable timestamped snapshot of a workflow state stored under a key."""

    model_config = ConfigDict(frozen=True)

    key: str
    saved_at: datetime = Field(default_factory=utc_now)
    label: Optional[str] = None
    state: WorkflowState
