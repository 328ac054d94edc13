"""Tests for scope analysis and iteration/abort helpers."""

import pytest

from refactor_engine.models import (
    ClarificationAnswer,
    FileTree,
    IterationOutcome,
    IterationRecord,
    Phase,
    RefactorRequest,
    RequestConstraints,
    ValidationCategory,
    ValidationCommand,
    ValidationResult,
    ValidationStatus,
)
from refactor_engine.orchestrator.recovery import (
    ABORT_PREFIX,
    abort_summary,
    default_ambiguity_predicate,
    enter,
    failure_context,
    has_budget,
    latest_tree_after,
    rebuild_patch_set,
)
from refactor_engine.orchestrator.state import make_initial_state

from conftest import DATE_UTILS_TS

TEST = ValidationCommand(command="npx vitest run", category=ValidationCategory.TEST)


def analyze(workspace, goal, scope=(), answers=(), **constraints):
    request = RefactorRequest(goal=goal, scope=scope, constraints=RequestConstraints(**constraints))
    return default_ambiguity_predicate(request, workspace, list(answers))


# ---------------------------------------------------------------------------
# default_ambiguity_predicate
# ---------------------------------------------------------------------------

def test_explicit_path_resolves(workspace):
    analysis = analyze(workspace, "Rename pad", scope=("src/dateUtils.ts",))
    assert not analysis.is_ambiguous
    assert analysis.target_paths == ("src/dateUtils.ts",)


def test_glob_matching_several_unnamed_files_asks(workspace):
    analysis = analyze(workspace, "Extract the shared formatting helper", scope=("src/*.ts",))
    assert analysis.is_ambiguous
    assert analysis.question.candidates == ("src/dateUtils.ts", "src/formatters.ts")


def test_glob_narrowed_to_files_named_in_goal(workspace):
    analysis = analyze(workspace, "Move the helpers out of dateUtils", scope=("src/*.ts",))
    assert analysis.target_paths == ("src/dateUtils.ts",)


def test_breadth_word_accepts_every_match(workspace):
    analysis = analyze(workspace, "Use named exports in all modules", scope=("src/*.ts",))
    assert analysis.target_paths == ("src/dateUtils.ts", "src/formatters.ts")


def test_ignored_directories_are_never_targets(workspace):
    analysis = analyze(workspace, "Use named exports across the repo", scope=("**/*.ts",))
    assert "node_modules/date-fns/index.ts" not in analysis.target_paths


def test_pattern_without_matches_asks(workspace):
    analysis = analyze(workspace, "Rename pad", scope=("src/missing.ts",))
    assert analysis.is_ambiguous
    assert "matches no files" in analysis.question.question


def test_empty_scope_asks_with_named_candidates(workspace):
    analysis = analyze(workspace, "Rename pad in src/dateUtils.ts")
    assert analysis.is_ambiguous
    assert analysis.question.candidates == ("src/dateUtils.ts",)


def test_conflicting_constraints_ask_until_answered(workspace):
    blocked = analyze(
        workspace, "Rename pad", scope=("src/dateUtils.ts",), allow_breaking=True
    )
    assert blocked.is_ambiguous
    assert "Which should take precedence" in blocked.question.question

    answered = analyze(
        workspace,
        "Rename pad",
        scope=("src/dateUtils.ts",),
        answers=[ClarificationAnswer(text="breaking is fine")],
        allow_breaking=True,
    )
    assert answered.target_paths == ("src/dateUtils.ts",)


def test_answer_files_override_scope(workspace):
    answers = [
        ClarificationAnswer(text="first", selected_paths=("src/formatters.ts",)),
        ClarificationAnswer(text="actually", selected_paths=("src/dateUtils.ts",)),
    ]
    analysis = analyze(workspace, "Extract helper", scope=("src/*.ts",), answers=answers)
    assert analysis.target_paths == ("src/dateUtils.ts",)


def test_answer_naming_missing_file_asks_again(workspace):
    answers = [ClarificationAnswer(text="this one", selected_paths=("src/nope.ts",))]
    analysis = analyze(workspace, "Extract helper", scope=("src/*.ts",), answers=answers)
    assert analysis.is_ambiguous
    assert "src/nope.ts" in analysis.question.question


# ---------------------------------------------------------------------------
# Transitions and budget
# ---------------------------------------------------------------------------

def make_state(**overrides):
    state = make_initial_state(RefactorRequest(goal="Rename pad"), "/repo", max_iterations=2)
    state.update(overrides)
    return state


def test_enter_records_transition():
    update = enter(make_state(phase=Phase.CRITIQUING), Phase.ITERATING)
    assert update == {"phase": Phase.ITERATING, "transitions": ["critiquing->iterating"]}


@pytest.mark.parametrize("count, expected", [(0, True), (1, True), (2, False)])
def test_has_budget(count, expected):
    assert has_budget(make_state(planning_count=count)) is expected


# ---------------------------------------------------------------------------
# Failure context and abort summaries
# ---------------------------------------------------------------------------

def test_failure_context_includes_failed_command_tail():
    output = "\n".join(f"line {i}" for i in range(40))
    passed = ValidationResult(command=TEST, status=ValidationStatus.PASSED, exit_code=0, stdout="ok")
    failed = ValidationResult(command=TEST, status=ValidationStatus.FAILED, exit_code=1, stderr=output)
    record = IterationRecord(
        sequence=2,
        results=(passed, failed),
        outcome=IterationOutcome.FAILED,
        critique=("hidden behavior change",),
    )
    lines = failure_context(record)

    assert lines[:3] == [
        "attempt 2 failed",
        "critique: hidden behavior change",
        "test `npx vitest run` -> failed (exit 1)",
    ]
    assert lines[-1] == "  line 39"
    assert "  line 9" not in lines
    assert "  ok" not in lines


def test_abort_summary_for_exhausted_budget():
    state = make_state(
        planning_count=2,
        history=[IterationRecord(sequence=i, outcome=IterationOutcome.FAILED) for i in (1, 2)],
    )
    summary = abort_summary(state, reverted=True)
    assert summary == (
        f"{ABORT_PREFIX} iteration budget exhausted. Planning entries: 2/2. "
        "Failed iterations: 2. Working tree reverted."
    )


def test_abort_summary_reasons():
    assert "request cancelled" in abort_summary(make_state(cancelled=True), reverted=False)
    non_retryable = make_state(attempt_error="plan_node error: rejected goal", retryable=False)
    assert "non-retryable failure: plan_node error" in abort_summary(non_retryable, reverted=False)
    assert abort_summary(make_state(), reverted=False).endswith("Working tree untouched.")


# ---------------------------------------------------------------------------
# Formatter fold-back helpers
# ---------------------------------------------------------------------------

def test_latest_tree_after_skips_commands_without_capture():
    first = ValidationResult(
        command=TEST, status=ValidationStatus.PASSED, tree_after={"src/a.ts": "a\n"}
    )
    skipped = ValidationResult(command=TEST, status=ValidationStatus.SKIPPED)
    assert latest_tree_after([first, skipped]) == {"src/a.ts": "a\n"}
    assert latest_tree_after([]) == {}


def test_rebuild_patch_set_covers_every_change_kind():
    before = FileTree(files={"src/dateUtils.ts": DATE_UTILS_TS, "src/old.ts": "old\n", "src/same.ts": "x\n"})
    after = {
        "src/dateUtils.ts": DATE_UTILS_TS.replace('"0"', "'0'"),
        "src/old.ts": None,
        "src/new.ts": "new\n",
        "src/same.ts": "x\n",
    }
    patch_set = rebuild_patch_set(before, after)

    assert [diff.path for diff in patch_set.file_diffs] == ["src/dateUtils.ts"]
    assert patch_set.deleted_files == ("src/old.ts",)
    assert patch_set.new_files == {"src/new.ts": "new\n"}
