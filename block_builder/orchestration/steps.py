"""Stage functions of the block builder pipeline.

Each stage receives the current :class:`WorkflowState` and the
:class:`RunContext` and returns a partial update. Stages never raise for
failures of external systems: those become a :class:`WorkflowError` with
``current_step = FAILED``, or a suspension when a person can fill the gap.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from pydantic import ValidationError

from ..connectors.base import ConnectorError
from ..connectors.reference import is_url_reference, parse_design_reference
from ..exceptions import ResumePayloadError
from ..models.workflow import (
    AwaitingInput,
    InputType,
    VisualReference,
    WorkflowError,
    WorkflowState,
    WorkflowStep,
    utc_now,
)
from ..utils.resilience import CircuitOpenError
from ..utils.retry import RetryExhaustedError
from .context import RunContext
from .graph import (
    ANALYZE,
    CAPTURE_REFERENCE,
    COMPLETE,
    EXTRACT,
    FAIL,
    GENERATE,
    INITIALIZE,
    VALIDATE,
)

logger = logging.getLogger(__name__)

StageFunc = Callable[[WorkflowState, RunContext], Awaitable[Dict[str, Any]]]

# Failures of external calls that stages turn into workflow errors
EXTERNAL_ERRORS = (ConnectorError, RetryExhaustedError, CircuitOpenError, TimeoutError, ConnectionError)

SKIP = "skip"
CONFIRM_VALUES = frozenset({"yes", "y", "confirm", "true"})
DECLINE_VALUES = frozenset({"no", "n", "decline", "false"})


def _is_retryable(exc: BaseException, ctx: RunContext) -> bool:
    if isinstance(exc, (RetryExhaustedError, CircuitOpenError)):
        return True
    return ctx.classifier.is_retryable(exc)


def _failure(
    step: WorkflowStep,
    message: str,
    retryable: bool = False,
    requires_user_input: bool = False,
    error_type: Optional[str] = None,
) -> Dict[str, Any]:
    logger.error(f"Stage {step.value} failed: {message}")
    return {
        "current_step": WorkflowStep.FAILED,
        "errors": [
            WorkflowError(
                step=step,
                message=message,
                retryable=retryable,
                requires_user_input=requires_user_input,
                error_type=error_type,
            )
        ],
    }


def _external_failure(step: WorkflowStep, exc: BaseException, ctx: RunContext) -> Dict[str, Any]:
    return _failure(step, str(exc), retryable=_is_retryable(exc, ctx), error_type=type(exc).__name__)


def _elapsed(state: WorkflowState) -> Dict[str, Any]:
    end_time = utc_now()
    return {"end_time": end_time, "duration": (end_time - state.start_time).total_seconds()}


async def initialize(state: WorkflowState, ctx: RunContext) -> Dict[str, Any]:
    """Check the request before any external call is made."""
    logger.info(f"Initializing workflow for block '{state.input.name}'")
    reference = state.input.design_ref
    if is_url_reference(reference):
        try:
            parsed = parse_design_reference(reference)
        except ValueError as e:
            return _failure(WorkflowStep.INITIALIZED, f"Invalid design reference: {e}", error_type="ValueError")
        logger.info(f"Resolved design node {parsed.node_id} from URL")

    return {"current_step": WorkflowStep.EXTRACTING_DESIGN, "start_time": utc_now()}


async def extract(state: WorkflowState, ctx: RunContext) -> Dict[str, Any]:
    """Pull structural content (and optionally node metadata) from the design source."""
    reference = state.input.design_ref
    source = ctx.design_source
    try:
        design_context = await ctx.call(source.name, "get_design_context", lambda: source.get_design_context(reference))
    except EXTERNAL_ERRORS as e:
        return _external_failure(WorkflowStep.EXTRACTING_DESIGN, e, ctx)

    logger.info(f"Design context extracted: {len(design_context.content)} characters")
    update: Dict[str, Any] = {
        "design_context": design_context,
        "current_step": WorkflowStep.CAPTURING_REFERENCE,
    }

    if state.input.options.include_metadata:
        try:
            update["metadata"] = await ctx.call(source.name, "get_metadata", lambda: source.get_metadata(reference))
        except EXTERNAL_ERRORS as e:
            # Metadata only enriches the analysis
            logger.warning(f"Continuing without design metadata: {e}")

    return update


async def capture_reference(state: WorkflowState, ctx: RunContext) -> Dict[str, Any]:
    """Render a visual reference, suspending for a person to supply one on failure."""
    if not state.input.options.capture_visual_reference:
        logger.info("Visual reference capture disabled, skipping")
        return {"current_step": WorkflowStep.ANALYZING}

    reference = state.input.design_ref
    source = ctx.design_source
    try:
        visual = await ctx.call(source.name, "get_visual_reference", lambda: source.get_visual_reference(reference))
    except EXTERNAL_ERRORS as e:
        logger.warning(f"Visual reference capture failed, requesting one from the user: {e}")
        return {
            "current_step": WorkflowStep.AWAITING_INPUT,
            "awaiting_user_input": AwaitingInput(
                prompt_message=(
                    f"Capturing a visual reference failed: {e}. Please provide an image of the "
                    f"design ({reference}) to improve generation accuracy."
                ),
                input_type=InputType.VISUAL_REFERENCE,
                resume_step=WorkflowStep.ANALYZING,
                options=["Provide an image as base64 or URL", 'Type "skip" to continue without it'],
            ),
        }

    logger.info("Visual reference captured")
    return {"visual_reference": visual, "current_step": WorkflowStep.ANALYZING}


async def analyze(state: WorkflowState, ctx: RunContext) -> Dict[str, Any]:
    if state.design_context is None:
        return _failure(WorkflowStep.ANALYZING, "No design context available for analysis")

    generator = ctx.generator
    content = state.design_context.content
    try:
        analysis = await ctx.call(
            generator.name,
            "analyze_structure",
            lambda: generator.analyze_structure(content, state.visual_reference, state.metadata),
        )
    except EXTERNAL_ERRORS as e:
        return _external_failure(WorkflowStep.ANALYZING, e, ctx)

    analysis = analysis.model_copy(update={"name": state.input.name})
    logger.info(
        f"Analysis complete: {analysis.block_type} block, "
        f"{len(analysis.container_fields)} container fields, {len(analysis.item_fields)} item fields"
    )
    return {"analysis": analysis, "current_step": WorkflowStep.GENERATING}


async def generate(state: WorkflowState, ctx: RunContext) -> Dict[str, Any]:
    if state.design_context is None:
        return _failure(WorkflowStep.GENERATING, "No design context available for generation")

    generator = ctx.generator
    request = state.input
    content = state.design_context.content
    try:
        artifacts = await ctx.call(
            generator.name,
            "generate_artifacts",
            lambda: generator.generate_artifacts(request.name, request.output_path, content, request.options),
        )
    except EXTERNAL_ERRORS as e:
        return _external_failure(WorkflowStep.GENERATING, e, ctx)

    logger.info(f"Generated {len(artifacts.files)} files ({artifacts.total_bytes()} bytes) in {artifacts.output_dir}")
    return {"generated_artifacts": artifacts, "current_step": WorkflowStep.VALIDATING}


async def validate(state: WorkflowState, ctx: RunContext) -> Dict[str, Any]:
    """Validate the generated output.

    A validator outage does not fail the workflow; with ``require_validation``
    the workflow waits for a person to confirm instead. A failed result only
    fails the workflow under ``strict_validation``.
    """
    options = state.input.options
    if not options.validate_output:
        logger.info("Output validation disabled, skipping")
        return {"current_step": WorkflowStep.REGISTERING}

    generator = ctx.generator
    request = state.input
    try:
        result = await ctx.call(
            generator.name,
            "validate_output",
            lambda: generator.validate_output(request.block_path, request.name, options.strict_validation),
        )
    except EXTERNAL_ERRORS as e:
        if options.require_validation:
            logger.warning(f"Validation unavailable, asking for confirmation: {e}")
            return {
                "current_step": WorkflowStep.AWAITING_INPUT,
                "awaiting_user_input": AwaitingInput(
                    prompt_message=(
                        f"Validating block '{request.name}' failed: {e}. "
                        "Confirm to register the block without validation."
                    ),
                    input_type=InputType.CONFIRMATION,
                    resume_step=WorkflowStep.REGISTERING,
                    options=["yes", "no"],
                ),
            }
        logger.warning(f"Validation check failed, continuing: {e}")
        return {"current_step": WorkflowStep.REGISTERING}

    logger.info(
        f"Validation {result.status}: {len(result.errors)} errors, {len(result.warnings)} warnings"
    )
    for warning in result.warnings:
        logger.warning(f"Validation warning: {warning}")

    if not result.passed and options.strict_validation:
        update = _failure(
            WorkflowStep.VALIDATING,
            f"Strict validation failed: {'; '.join(result.errors) or result.status}",
            error_type="ValidationFailed",
        )
        update["validation"] = result
        return update

    return {"validation": result, "current_step": WorkflowStep.REGISTERING}


async def complete(state: WorkflowState, ctx: RunContext) -> Dict[str, Any]:
    """Register the block with the catalog and stamp the end time."""
    update: Dict[str, Any] = {}
    request = state.input
    if request.options.register_in_catalog and ctx.catalog is not None:
        catalog = ctx.catalog
        try:
            await ctx.call(catalog.name, "register", lambda: catalog.register(request.name, request.block_path))
        except EXTERNAL_ERRORS as e:
            return _external_failure(WorkflowStep.REGISTERING, e, ctx)
        update["catalog_registered"] = True

    update.update(_elapsed(state))
    update["current_step"] = WorkflowStep.COMPLETED
    logger.info(
        f"Workflow completed: block '{request.name}' is ready in {request.block_path} "
        f"({update['duration']:.2f}s)"
    )
    return update


async def fail(state: WorkflowState, ctx: RunContext) -> Dict[str, Any]:
    logger.error(f"Workflow failed for block '{state.input.name}' with {len(state.errors)} errors")
    for i, error in enumerate(state.errors, 1):
        logger.error(f"  Error {i}: [{error.step.value}] {error.message} (retryable={error.retryable})")
    update = _elapsed(state)
    update["current_step"] = WorkflowStep.FAILED
    return update


STAGES: Dict[str, StageFunc] = {
    INITIALIZE: initialize,
    EXTRACT: extract,
    CAPTURE_REFERENCE: capture_reference,
    ANALYZE: analyze,
    GENERATE: generate,
    VALIDATE: validate,
    COMPLETE: complete,
    FAIL: fail,
}


def _is_skip(payload: Any) -> bool:
    return isinstance(payload, str) and payload.strip().lower() == SKIP


def _visual_reference_from(payload: Any) -> Optional[VisualReference]:
    if isinstance(payload, VisualReference):
        return payload
    if isinstance(payload, Mapping) and payload.get("data"):
        try:
            return VisualReference(data=str(payload["data"]), format=payload.get("format") or "png")
        except ValidationError:
            return None
    return None


def _confirmation_from(payload: Any) -> Optional[bool]:
    if isinstance(payload, bool):
        return payload
    if isinstance(payload, str):
        answer = payload.strip().lower()
        if answer in CONFIRM_VALUES:
            return True
        if answer in DECLINE_VALUES:
            return False
    return None


def resume_update(state: WorkflowState, payload: Any) -> Dict[str, Any]:
    """Interpret a resume payload for a suspended state.

    Returns:
        Partial update clearing the suspension and naming the step to continue at

    Raises:
        ResumePayloadError: If the payload does not fit the expected input kind
        ValueError: If the state is not waiting for input
    """
    awaiting = state.awaiting_user_input
    if awaiting is None:
        raise ValueError("Workflow is not waiting for input")

    cleared: Dict[str, Any] = {"awaiting_user_input": None, "current_step": awaiting.resume_step}

    if _is_skip(payload):
        logger.info(f"User skipped {awaiting.input_type.value} input, continuing")
        return cleared

    if awaiting.input_type == InputType.VISUAL_REFERENCE:
        visual = _visual_reference_from(payload)
        if visual is not None:
            logger.info("User provided a visual reference")
            return {**cleared, "visual_reference": visual, "user_provided_reference": True}

    elif awaiting.input_type == InputType.CONFIRMATION:
        confirmed = _confirmation_from(payload)
        if confirmed is True:
            logger.info("User confirmed, continuing")
            return cleared
        if confirmed is False:
            return {
                **_failure(
                    WorkflowStep.AWAITING_INPUT,
                    "User declined to continue",
                    requires_user_input=True,
                    error_type="UserDeclined",
                ),
                "awaiting_user_input": None,
            }

    elif awaiting.input_type == InputType.TEXT:
        if isinstance(payload, str) and payload.strip():
            return {**cleared, "user_notes": [payload.strip()]}

    raise ResumePayloadError(awaiting.input_type.value, payload)
