"""Fixed stage graph, routing predicate and state reducers.

The pipeline is a small directed acyclic graph::

    initialize -> extract -> capture_reference -> analyze -> generate -> validate -> complete

Every stage may route to ``fail``; ``capture_reference`` and ``validate`` may
also leave the graph suspended. Routing only reads the merged state.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import networkx as nx

from ..models.workflow import WorkflowState, WorkflowStep

INITIALIZE = "initialize"
EXTRACT = "extract"
CAPTURE_REFERENCE = "capture_reference"
ANALYZE = "analyze"
GENERATE = "generate"
VALIDATE = "validate"
COMPLETE = "complete"
FAIL = "fail"

END = "__end__"
SUSPEND = "__suspend__"

PIPELINE: List[str] = [INITIALIZE, EXTRACT, CAPTURE_REFERENCE, ANALYZE, GENERATE, VALIDATE, COMPLETE]
SUSPENDABLE_STAGES = frozenset({CAPTURE_REFERENCE, VALIDATE})

# Marker written into current_step when the executor transitions into a stage
STEP_FOR_STAGE: Dict[str, WorkflowStep] = {
    INITIALIZE: WorkflowStep.INITIALIZED,
    EXTRACT: WorkflowStep.EXTRACTING_DESIGN,
    CAPTURE_REFERENCE: WorkflowStep.CAPTURING_REFERENCE,
    ANALYZE: WorkflowStep.ANALYZING,
    GENERATE: WorkflowStep.GENERATING,
    VALIDATE: WorkflowStep.VALIDATING,
    COMPLETE: WorkflowStep.REGISTERING,
    FAIL: WorkflowStep.FAILED,
}
STAGE_FOR_STEP: Dict[WorkflowStep, str] = {step: stage for stage, step in STEP_FOR_STAGE.items()}

APPEND_FIELDS = frozenset({"errors", "user_notes"})


class GraphError(RuntimeError):
    """Raised when a stage produces a transition the graph does not allow."""


def build_graph() -> nx.DiGraph:
    """Build and validate the stage graph.

    Raises:
        ValueError: If the graph contains cycles
    """
    graph = nx.DiGraph()
    for stage in PIPELINE + [FAIL]:
        graph.add_node(stage, step=STEP_FOR_STAGE[stage], suspendable=stage in SUSPENDABLE_STAGES)

    for current, successor in zip(PIPELINE, PIPELINE[1:]):
        graph.add_edge(current, successor, kind="next")
    for stage in PIPELINE:
        graph.add_edge(stage, FAIL, kind="fail")

    if not nx.is_directed_acyclic_graph(graph):
        raise ValueError("Workflow graph contains cycles")
    return graph


GRAPH = build_graph()


def next_stage(stage: str) -> Optional[str]:
    """Statically defined successor of ``stage`` (None for terminal stages)."""
    for _, successor, kind in GRAPH.out_edges(stage, data="kind"):
        if kind == "next":
            return successor
    return None


def route(stage: str, state: WorkflowState) -> str:
    """Decide where execution goes after ``stage`` produced ``state``.

    Returns:
        The next stage name, ``SUSPEND`` or ``END``

    Raises:
        GraphError: If the state names a transition the graph does not have
    """
    if stage not in GRAPH:
        raise GraphError(f"Unknown stage '{stage}'")
    if stage == FAIL:
        return END

    step = state.current_step
    if step == WorkflowStep.FAILED:
        return FAIL
    if step == WorkflowStep.AWAITING_INPUT:
        if not GRAPH.nodes[stage]["suspendable"]:
            raise GraphError(f"Stage '{stage}' cannot suspend the workflow")
        return SUSPEND
    if stage == COMPLETE:
        if step != WorkflowStep.COMPLETED:
            raise GraphError(f"Stage '{COMPLETE}' left the workflow at '{step.value}'")
        return END

    successor = next_stage(stage)
    if successor is None or STAGE_FOR_STEP.get(step) != successor:
        raise GraphError(
            f"Stage '{stage}' moved the workflow to '{step.value}', expected "
            f"'{STEP_FOR_STAGE[successor].value if successor else 'end'}'"
        )
    return successor


def stage_for(state: WorkflowState) -> str:
    """Stage that continues a checkpoint at ``state.current_step``.

    Raises:
        GraphError: For suspended or completed states, which have no stage to run
    """
    stage = STAGE_FOR_STEP.get(state.current_step)
    if stage is None:
        raise GraphError(f"No stage continues a workflow at '{state.current_step.value}'")
    return stage


def apply_update(state: WorkflowState, update: Mapping[str, Any]) -> WorkflowState:
    """Merge a partial update into ``state`` and return the new state.

    ``errors`` and ``user_notes`` are appended; every other field is replaced.

    Raises:
        KeyError: If the update names a field WorkflowState does not have
    """
    unknown = set(update) - set(WorkflowState.model_fields)
    if unknown:
        raise KeyError(f"Unknown state fields in update: {', '.join(sorted(unknown))}")

    merged: Dict[str, Any] = {}
    for field_name, value in update.items():
        if field_name in APPEND_FIELDS:
            merged[field_name] = list(getattr(state, field_name)) + list(value or [])
        else:
            merged[field_name] = value
    return WorkflowState.model_validate({**dict(state), **merged})
