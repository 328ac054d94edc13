"""Rendering of engine state into the nine fixed protocol sections.

Rendering is total: any engine state, including a partially populated one,
maps to a complete ProtocolDocument with ``None`` for empty sections.
"""

import posixpath
import shlex
from typing import Any, Mapping

from refactor_engine.models import (
    ClarificationQuestion,
    IterationRecord,
    PatchSet,
    Phase,
    ProtocolDocument,
    RiskAssessment,
    RollbackAction,
    RollbackPlan,
    ValidationPlan,
    ValidationResult,
    ValidationStatus,
)
from refactor_engine.patching.unified_diff import NO_NEWLINE_MARKER, render_diffs, render_file_diff
from refactor_engine.protocol.parser import FILE_FOOTER, FILE_LINE_PREFIX

PATCHSET_SCOPE = "PATCHSET"
OUTPUT_TAIL_LINES = 20
ROLLBACK_PATCH_DELIMITER = "ROLLBACK_PATCH"


def render_new_files(new_files: Mapping[str, str]) -> str:
    blocks: list[str] = []
    for path, content in new_files.items():
        lines = [f"=== FILE: {path} ==="]
        if content:
            body = content[:-1] if content.endswith("\n") else content
            lines.extend(FILE_LINE_PREFIX + line for line in body.split("\n"))
            if not content.endswith("\n"):
                lines.append(NO_NEWLINE_MARKER)
        lines.append(FILE_FOOTER)
        blocks.append("\n".join(lines))
    return "\n".join(blocks)


def render_patch_set(patch_set: PatchSet) -> str:
    """Render the DIFFS, NEW_FILES and DELETED_FILES sections of a PatchSet."""
    return ProtocolDocument(
        diffs=render_diffs(patch_set.file_diffs) or None,
        new_files=render_new_files(patch_set.new_files) or None,
        deleted_files="\n".join(patch_set.deleted_files) or None,
    ).to_text()


def render_risks(risk: RiskAssessment | None) -> str | None:
    if risk is None:
        return None
    lines = [f"{PATCHSET_SCOPE} [{risk.level.value}] {_one_line(risk.justification)}"]
    for file_risk in risk.file_risks:
        lines.append(
            f"{file_risk.path} [{file_risk.level.value}] {_one_line(file_risk.justification)}"
        )
    return "\n".join(lines)


def render_commands(plan: ValidationPlan | None) -> str | None:
    if plan is None or not plan.commands:
        return None
    return "\n".join(command.command for command in plan.commands)


def _result_line(result: ValidationResult) -> str:
    parts = [f"[{result.status.value}] {result.command.category.value}: {result.command.command}"]
    details = []
    if result.exit_code is not None:
        details.append(f"exit {result.exit_code}")
    details.append(f"{result.duration_seconds:.2f}s")
    if result.is_infrastructure_failure:
        details.append("infrastructure")
    parts.append(f"({', '.join(details)})")
    if result.note:
        parts.append(f"- {result.note}")
    return " ".join(parts)


def render_tests(history: list[IterationRecord]) -> str | None:
    """Every iteration's results, oldest first; results are never merged."""
    lines: list[str] = []
    for record in history:
        if not record.results:
            continue
        lines.append(f"iteration {record.sequence} ({record.outcome.value}):")
        lines.extend(f"  {_result_line(result)}" for result in record.results)
    return "\n".join(lines) or None


def _output_tail(result: ValidationResult) -> list[str]:
    output = (result.stderr or result.stdout).rstrip("\n")
    if not output:
        return []
    return output.split("\n")[-OUTPUT_TAIL_LINES:]


def render_notes(state: Mapping[str, Any]) -> str | None:
    lines: list[str] = []
    phase = state.get("phase")
    if phase is not None:
        lines.append(f"phase: {Phase(phase).value}")

    clarification: ClarificationQuestion | None = state.get("clarification")
    if clarification is not None and phase == Phase.BLOCKED_ON_CLARIFICATION:
        lines.append(f"question: {clarification.question}")
        lines.extend(f"  candidate: {path}" for path in clarification.candidates)
        lines.append("answer with 'ANSWER: <text>' and an optional 'FILES:' list, or 'CANCEL'")

    for record in state.get("history") or []:
        lines.append(f"iteration {record.sequence}: {record.outcome.value}")
        if record.risk is not None:
            lines.append(f"  risk: {record.risk.level.value}")
        if record.error:
            lines.append(f"  error: {record.error}")
        lines.extend(f"  critique: {item}" for item in record.critique)
        for result in record.results:
            if result.passed or result.status == ValidationStatus.SKIPPED:
                continue
            tail = _output_tail(result)
            if tail:
                lines.append(f"  output of {result.command.command}:")
                lines.extend(f"    {line}" for line in tail)

    lines.extend(f"error: {error}" for error in state.get("errors") or [])
    return "\n".join(lines) or None


def render_rollback(plan: RollbackPlan | None, applied_by_engine: bool = False) -> str | None:
    """Shell commands that restore the pre-request tree from a RollbackPlan.

    Modified files are reverted by feeding the inverse diff to ``git apply``,
    deleted files are rewritten from their pre-request content and created
    files are removed. Run from the repository root; HEAD is never consulted,
    so uncommitted edits made before the request survive.
    """
    if plan is None or not plan.steps:
        return None
    lines = []
    if applied_by_engine:
        lines.append("# already applied by the engine; the commands below are for reference")
    lines.append("git status --short")
    for step in plan.steps:
        if step.action == RollbackAction.DELETE:
            lines.append(f"rm -f -- {shlex.quote(step.path)}")
        elif step.action == RollbackAction.RESTORE:
            lines.extend(_restore_commands(step.path, step.prior_content or ""))
        else:
            lines.append(f"git apply -p0 <<'{ROLLBACK_PATCH_DELIMITER}'")
            lines.append(render_file_diff(step.inverse_diff))
            lines.append(ROLLBACK_PATCH_DELIMITER)
    lines.append("git status --short")
    return "\n".join(lines)


def _restore_commands(path: str, content: str) -> list[str]:
    # One physical line per file so no content line starts a line of the section
    target = shlex.quote(path)
    commands = []
    parent = posixpath.dirname(path)
    if parent:
        commands.append(f"mkdir -p -- {shlex.quote(parent)}")
    *complete, tail = content.split("\n")
    if complete:
        quoted = " ".join(shlex.quote(line) for line in complete)
        commands.append(f"printf '%s\\n' {quoted} > {target}")
    else:
        commands.append(f": > {target}")
    if tail:
        commands.append(f"printf '%s' {shlex.quote(tail)} >> {target}")
    return commands


def _one_line(text: str) -> str:
    return " ".join(text.split())


def render_document(state: Mapping[str, Any]) -> ProtocolDocument:
    """Map an engine state to the nine protocol sections."""
    patch_set: PatchSet = state.get("patch_set") or PatchSet()
    phase = state.get("phase")
    return ProtocolDocument(
        plan=state.get("plan_text") or None,
        risks=render_risks(state.get("risk")),
        diffs=render_diffs(patch_set.file_diffs) or None,
        new_files=render_new_files(patch_set.new_files) or None,
        deleted_files="\n".join(patch_set.deleted_files) or None,
        commands=render_commands(state.get("validation_plan")),
        tests=render_tests(state.get("history") or []),
        notes=render_notes(state),
        rollback=render_rollback(
            state.get("rollback_plan"),
            applied_by_engine=phase == Phase.ABORTED and bool(state.get("rolled_back")),
        ),
    )
