"""State definition for the LangGraph phase state machine."""

import operator
from typing import Annotated, TypedDict

from refactor_engine.config import DEFAULT_MAX_ITERATIONS, clamp_iterations
from refactor_engine.models import (
    ClarificationAnswer,
    ClarificationQuestion,
    FileTree,
    IterationRecord,
    PatchSet,
    Phase,
    RefactorRequest,
    RiskAssessment,
    RollbackPlan,
    ValidationPlan,
    ValidationResult,
)


class EngineState(TypedDict):
    """State for one RefactorRequest.

    Fields with Annotated[list, operator.add] reducers accumulate across nodes.
    All other fields use default overwrite semantics.
    """

    # Input, fixed at intake
    request: RefactorRequest
    repo_path: str
    max_iterations: int
    module_system: str
    validation_plan: ValidationPlan
    replan_on_conflict: bool

    # Lifecycle
    phase: Phase
    transitions: Annotated[list[str], operator.add]

    # Analysis and clarification
    target_paths: list[str]
    request_tree: FileTree | None
    clarification: ClarificationQuestion | None
    pending_answer: ClarificationAnswer | None
    answers: Annotated[list[ClarificationAnswer], operator.add]
    cancelled: bool

    # Current attempt
    planning_count: int
    plan_text: str | None
    patch_set: PatchSet | None
    risk: RiskAssessment | None
    pre_apply_tree: FileTree | None
    rollback_plan: RollbackPlan | None
    applied: bool
    rolled_back: bool
    results: list[ValidationResult]
    attempt_error: str | None
    retryable: bool
    failure_context: list[str]

    # History and errors (accumulating reducers)
    history: Annotated[list[IterationRecord], operator.add]
    errors: Annotated[list[str], operator.add]


def make_initial_state(
    request: RefactorRequest,
    repo_path: str,
    validation_plan: ValidationPlan | None = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    module_system: str = "esm",
    replan_on_conflict: bool = True,
) -> EngineState:
    """Create the initial state for one refactor request.

    Args:
        request: The accepted, immutable request.
        repo_path: Absolute path to the repository root.
        validation_plan: Ordered checks run after every applied patch.
        max_iterations: Maximum Planning entries before aborting.
        module_system: "esm" or "cjs", used by the risk classifier.
        replan_on_conflict: Re-plan instead of aborting on HunkConflict or
            PathCollision while budget remains.

    Returns:
        EngineState dict with all fields initialised to defaults.
    """
    return {
        "request": request,
        "repo_path": repo_path,
        "max_iterations": clamp_iterations(max_iterations),
        "module_system": module_system,
        "validation_plan": validation_plan or ValidationPlan(),
        "replan_on_conflict": replan_on_conflict,
        "phase": Phase.INTAKE,
        "transitions": [],
        "target_paths": [],
        "request_tree": None,
        "clarification": None,
        "pending_answer": None,
        "answers": [],
        "cancelled": False,
        "planning_count": 0,
        "plan_text": None,
        "patch_set": None,
        "risk": None,
        "pre_apply_tree": None,
        "rollback_plan": None,
        "applied": False,
        "rolled_back": False,
        "results": [],
        "attempt_error": None,
        "retryable": True,
        "failure_context": [],
        "history": [],
        "errors": [],
    }
