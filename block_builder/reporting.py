"""Human-readable reports derived from workflow state."""
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List

from rich.table import Table

from .models.workflow import WorkflowState

_MAX_CELL = 80


def export_state_summary(state: WorkflowState) -> str:
    """Render a markdown summary of a workflow state."""
    lines: List[str] = [
        "# Block Builder Workflow Summary",
        "",
        f"**Block Name:** {state.input.name}",
        f"**Design Reference:** {state.input.design_ref}",
        f"**Status:** {state.current_step.value}",
        f"**Started:** {state.start_time.isoformat()}",
    ]
    if state.end_time is not None:
        lines.append(f"**Finished:** {state.end_time.isoformat()}")
    if state.duration is not None:
        lines.append(f"**Duration:** {state.duration:.2f}s")
    lines.append("")

    if state.awaiting_user_input is not None:
        awaiting = state.awaiting_user_input
        lines.append("## Awaiting Input")
        lines.append(f"- Type: {awaiting.input_type.value}")
        lines.append(f"- Prompt: {awaiting.prompt_message}")
        for option in awaiting.options:
            lines.append(f"- Option: {option}")
        lines.append("")

    if state.errors:
        lines.append("## Errors")
        for i, error in enumerate(state.errors, 1):
            flag = " (retryable)" if error.retryable else ""
            lines.append(f"{i}. **[{error.step.value}]** {error.message}{flag}")
        lines.append("")

    if state.design_context is not None:
        lines.append("## Design Context")
        lines.append(f"- Content length: {len(state.design_context.content)} characters")
        lines.append(f"- Reference: {state.design_context.reference}")
        lines.append("")

    if state.visual_reference is not None:
        source = "user provided" if state.user_provided_reference else "captured"
        lines.append("## Visual Reference")
        lines.append(f"- Format: {state.visual_reference.format} ({source})")
        lines.append("")

    if state.analysis is not None:
        lines.append("## Analysis")
        lines.append(f"- Block type: {state.analysis.block_type}")
        lines.append(f"- Container fields: {len(state.analysis.container_fields)}")
        lines.append(f"- Item fields: {len(state.analysis.item_fields)}")
        lines.append("")

    if state.generated_artifacts is not None:
        lines.append("## Generated Files")
        lines.append("| Role | Bytes |")
        lines.append("|------|------:|")
        for role, content in sorted(state.generated_artifacts.files.items()):
            lines.append(f"| {role} | {len(content.encode('utf-8'))} |")
        lines.append("")

    if state.validation is not None:
        lines.append("## Validation")
        lines.append(f"- Status: {state.validation.status}")
        lines.append(f"- Errors: {len(state.validation.errors)}")
        lines.append(f"- Warnings: {len(state.validation.warnings)}")
        lines.append("")

    if state.user_notes:
        lines.append("## Notes")
        lines.extend(f"- {note}" for note in state.user_notes)
        lines.append("")

    return "\n".join(lines)


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= _MAX_CELL else text[: _MAX_CELL - 3] + "..."


def diff_table(diff: Dict[str, Dict[str, Any]], title: str = "State Diff") -> Table:
    """Rich table of a :func:`~block_builder.orchestration.state_store.diff_states` result."""
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Old", style="red")
    table.add_column("New", style="green")
    for field_name, change in diff.items():
        table.add_row(field_name, _cell(change.get("old")), _cell(change.get("new")))
    return table


def states_table(infos: Iterable[Any], title: str = "Workflow States") -> Table:
    """Rich table of stored state listing entries."""
    table = Table(title=title)
    table.add_column("Key", style="cyan")
    table.add_column("Step", style="bold")
    table.add_column("Saved At", style="green")
    table.add_column("Label")
    for info in infos:
        table.add_row(
            info.key,
            info.current_step.value,
            info.saved_at.isoformat(timespec="seconds"),
            info.label or "",
        )
    return table
