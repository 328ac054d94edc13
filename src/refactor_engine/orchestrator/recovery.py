"""Helper functions for analysis, iteration and abort decisions.

Everything here is stateless; the workspace is only read.
"""

import re
from typing import Callable

from refactor_engine.models import (
    ClarificationAnswer,
    ClarificationQuestion,
    FileTree,
    IterationOutcome,
    IterationRecord,
    PatchSet,
    Phase,
    RefactorRequest,
    ScopeAnalysis,
    ValidationResult,
)
from refactor_engine.orchestrator.state import EngineState
from refactor_engine.patching.unified_diff import generate_file_diff
from refactor_engine.patching.workspace import Workspace

ABORT_PREFIX = "ABORT:"
MIN_STEM_LENGTH = 3
FAILURE_TAIL_LINES = 30
_GLOB_CHARS = ("*", "?", "[")
_BREADTH_RE = re.compile(r"\b(all|every|each|across|everywhere|throughout)\b", re.IGNORECASE)

AmbiguityPredicate = Callable[[RefactorRequest, Workspace, list[ClarificationAnswer]], ScopeAnalysis]


def enter(state: EngineState, phase: Phase) -> dict:
    """State update moving the machine into ``phase``."""
    return {"phase": phase, "transitions": [f"{state['phase'].value}->{phase.value}"]}


def has_budget(state: EngineState) -> bool:
    """True while Planning may be entered again."""
    return state["planning_count"] < state["max_iterations"]


def _is_glob(pattern: str) -> bool:
    return any(char in pattern for char in _GLOB_CHARS)


def _goal_names(goal: str, path: str) -> bool:
    basename = path.rsplit("/", 1)[-1]
    stem = basename.split(".", 1)[0]
    lowered = goal.lower()
    if basename.lower() in lowered or path.lower() in lowered:
        return True
    if len(stem) < MIN_STEM_LENGTH:
        return False
    return re.search(rf"\b{re.escape(stem.lower())}\b", lowered) is not None


def default_ambiguity_predicate(
    request: RefactorRequest,
    workspace: Workspace,
    answers: list[ClarificationAnswer],
) -> ScopeAnalysis:
    """Decide whether the request can be planned without asking.

    Blocks when the scope is empty, a pattern matches no files, a wildcard
    pattern matches several files and the goal names none of them, or the
    constraints conflict. Paths listed in the latest answer's FILES block
    become the targets; any answer acknowledges a constraint conflict and
    accepts every match of a broad pattern.
    """
    selected = next((answer.selected_paths for answer in reversed(answers) if answer.selected_paths), ())
    if selected:
        matched = {path: workspace.glob(path) for path in selected}
        missing = [path for path, paths in matched.items() if not paths]
        if missing:
            return ScopeAnalysis(
                question=ClarificationQuestion(
                    question="These answered paths do not exist: " + ", ".join(missing)
                    + ". Which files should the refactor change?",
                )
            )
        resolved = [path for paths in matched.values() for path in paths]
        return ScopeAnalysis(target_paths=tuple(dict.fromkeys(resolved)))

    constraints = request.constraints
    if not answers and constraints.behavior_preserving and constraints.allow_breaking:
        return ScopeAnalysis(
            question=ClarificationQuestion(
                question=(
                    "The request is both behavior-preserving and allows breaking changes. "
                    "Which should take precedence?"
                ),
            )
        )

    if not request.scope:
        named = [path for path in workspace.glob("**/*") if path.lower() in request.goal.lower()]
        return ScopeAnalysis(
            question=ClarificationQuestion(
                question="The request has no file scope. Which files should the refactor change?",
                candidates=tuple(named),
            )
        )

    targets: list[str] = []
    for pattern in request.scope:
        matches = workspace.glob(pattern)
        if not matches:
            return ScopeAnalysis(
                question=ClarificationQuestion(
                    question=f"Scope pattern '{pattern}' matches no files. Which files did you mean?",
                )
            )
        if (
            _is_glob(pattern)
            and len(matches) > 1
            and not answers
            and not _BREADTH_RE.search(request.goal)
        ):
            named = [path for path in matches if _goal_names(request.goal, path)]
            if not named:
                return ScopeAnalysis(
                    question=ClarificationQuestion(
                        question=(
                            f"Scope pattern '{pattern}' matches {len(matches)} files and the "
                            "goal names none of them. Which should be changed?"
                        ),
                        candidates=tuple(matches),
                    )
                )
            matches = named
        targets.extend(matches)

    return ScopeAnalysis(target_paths=tuple(dict.fromkeys(targets)))


def latest_tree_after(results: list[ValidationResult]) -> dict[str, str | None]:
    """Watched file contents after the last command that actually ran."""
    for result in reversed(results):
        if result.tree_after:
            return dict(result.tree_after)
    return {}


def rebuild_patch_set(before: FileTree, after: dict[str, str | None]) -> PatchSet:
    """Express the change from ``before`` to ``after`` as a PatchSet.

    Used to fold formatter edits made during validation back into the
    attempt, so the final PatchSet matches the tree on disk.
    """
    file_diffs = []
    new_files: dict[str, str] = {}
    deleted: list[str] = []
    for path, content in after.items():
        prior = before.read(path)
        if prior is None and content is not None:
            new_files[path] = content
        elif prior is not None and content is None:
            deleted.append(path)
        elif prior is not None and content is not None:
            diff = generate_file_diff(path, prior, content)
            if diff is not None:
                file_diffs.append(diff)
    return PatchSet(file_diffs=tuple(file_diffs), new_files=new_files, deleted_files=tuple(deleted))


def failure_context(record: IterationRecord) -> list[str]:
    """Summarize a failed attempt for the next plan request."""
    lines = [f"attempt {record.sequence} failed"]
    if record.error:
        lines.append(f"error: {record.error}")
    lines.extend(f"critique: {item}" for item in record.critique)
    for result in record.results:
        if result.passed:
            continue
        label = f"{result.command.category.value} `{result.command.command}` -> {result.status.value}"
        if result.exit_code is not None:
            label += f" (exit {result.exit_code})"
        lines.append(label)
        output = (result.stderr or result.stdout).rstrip("\n")
        if output:
            lines.extend(f"  {line}" for line in output.split("\n")[-FAILURE_TAIL_LINES:])
    return lines


def abort_summary(state: EngineState, reverted: bool) -> str:
    """Diagnostic abort line written to ``errors``."""
    if state["cancelled"]:
        reason = "request cancelled"
    elif state["attempt_error"] and not state["retryable"]:
        reason = f"non-retryable failure: {state['attempt_error']}"
    elif state["attempt_error"] and not has_budget(state):
        reason = f"iteration budget exhausted after: {state['attempt_error']}"
    elif state["attempt_error"]:
        reason = state["attempt_error"]
    else:
        reason = "iteration budget exhausted"
    failed = sum(1 for record in state["history"] if record.outcome == IterationOutcome.FAILED)
    tree = "Working tree reverted" if reverted else "Working tree untouched"
    return (
        f"{ABORT_PREFIX} {reason}. "
        f"Planning entries: {state['planning_count']}/{state['max_iterations']}. "
        f"Failed iterations: {failed}. {tree}."
    )
