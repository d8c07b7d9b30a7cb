"""Tests for block_builder.reporting."""
from __future__ import annotations

from rich.console import Console

from block_builder.models.workflow import (
    AwaitingInput,
    DesignContext,
    GeneratedArtifacts,
    InputType,
    ValidationResult,
    VisualReference,
    WorkflowError,
    WorkflowState,
    WorkflowStep,
)
from block_builder.orchestration.state_store import StoredStateInfo, diff_states
from block_builder.reporting import diff_table, export_state_summary, states_table
from tests.mocks.connectors import make_input


def _render(table) -> str:
    console = Console(record=True, width=200)
    console.print(table)
    return console.export_text()


class TestExportStateSummary:
    def test_minimal_state(self):
        summary = export_state_summary(WorkflowState(input=make_input(name="hero", ref="1:2")))

        assert summary.startswith("# Block Builder Workflow Summary")
        assert "**Block Name:** hero" in summary
        assert "**Design Reference:** 1:2" in summary
        assert "**Status:** initialized" in summary
        assert "## Errors" not in summary
        assert "**Finished:**" not in summary

    def test_completed_state_sections(self):
        state = WorkflowState(input=make_input()).model_copy(
            update={
                "current_step": WorkflowStep.COMPLETED,
                "design_context": DesignContext(content="<div/>", reference="R1"),
                "visual_reference": VisualReference(data="abc", format="jpg"),
                "user_provided_reference": True,
                "generated_artifacts": GeneratedArtifacts(
                    output_dir="./blocks/x", files={"javascript": "let a;", "css": ".a{}"}
                ),
                "validation": ValidationResult(validated=True, warnings=["w"]),
                "user_notes": ["brand gradient"],
                "duration": 1.5,
            }
        )

        summary = export_state_summary(state)

        assert "- Content length: 6 characters" in summary
        assert "- Format: jpg (user provided)" in summary
        assert summary.index("| css | 4 |") < summary.index("| javascript | 6 |")
        assert "- Warnings: 1" in summary
        assert "- brand gradient" in summary
        assert "**Duration:** 1.50s" in summary

    def test_errors_and_awaiting_input(self):
        state = WorkflowState(input=make_input()).model_copy(
            update={
                "current_step": WorkflowStep.AWAITING_INPUT,
                "errors": [
                    WorkflowError(step=WorkflowStep.EXTRACTING_DESIGN, message="timeout", retryable=True),
                    WorkflowError(step=WorkflowStep.GENERATING, message="unauthorized"),
                ],
                "awaiting_user_input": AwaitingInput(
                    prompt_message="Provide a screenshot",
                    input_type=InputType.VISUAL_REFERENCE,
                    resume_step=WorkflowStep.ANALYZING,
                    options=["skip"],
                ),
            }
        )

        summary = export_state_summary(state)

        assert "1. **[extracting_design]** timeout (retryable)" in summary
        assert "2. **[generating]** unauthorized" in summary
        assert "2. **[generating]** unauthorized (retryable)" not in summary
        assert "- Type: visual-reference" in summary
        assert "- Option: skip" in summary


class TestTables:
    def test_diff_table_truncates_long_values(self):
        old = WorkflowState(input=make_input())
        new = old.model_copy(
            update={"design_context": DesignContext(content="x" * 500, reference="R1")}
        )

        text = _render(diff_table(diff_states(old, new), title="old -> new"))

        assert "old -> new" in text
        assert "design_context" in text
        assert "x" * 500 not in text
        assert "..." in text

    def test_states_table(self):
        state = WorkflowState(input=make_input())
        infos = [
            StoredStateInfo(key="t1", saved_at=state.start_time, current_step=WorkflowStep.GENERATING),
            StoredStateInfo(
                key="t1--checkpoint-failed-x",
                saved_at=state.start_time,
                current_step=WorkflowStep.FAILED,
                label="failed",
            ),
        ]

        text = _render(states_table(infos))

        assert "t1" in text
        assert "generating" in text
        assert "failed" in text
