"""LangGraph phase state machine for one refactor request.

Wires the planner, risk classifier, workspace, validation runner and critic
into a StateGraph that follows Intake -> Analyzing -> Planning -> Patching ->
Validating -> Critiquing -> (Iterating -> Planning)* -> Finalized | Aborted.
BlockedOnClarification ends an invocation; the next invocation resumes from
the entry router.
"""

import logging
import threading
from typing import Callable

from langgraph.graph import END, START, StateGraph

from refactor_engine.agents.critic import ConstraintCritic
from refactor_engine.agents.exceptions import DirectiveValidationError, ValidationRunnerError
from refactor_engine.agents.planner import Planner, PlanRequest
from refactor_engine.agents.risk_classifier import RiskClassifier
from refactor_engine.agents.validation_runner import ValidationRunner
from refactor_engine.models import (
    ClarificationQuestion,
    FileTree,
    IterationOutcome,
    IterationRecord,
    Phase,
    ScopeAnalysis,
)
from refactor_engine.orchestrator.exceptions import GraphBuildError
from refactor_engine.orchestrator.recovery import (
    AmbiguityPredicate,
    abort_summary,
    default_ambiguity_predicate,
    enter,
    failure_context,
    has_budget,
    latest_tree_after,
    rebuild_patch_set,
)
from refactor_engine.orchestrator.state import EngineState
from refactor_engine.patching.applier import apply_patch_set, invert_patch_set
from refactor_engine.patching.exceptions import PatchError, WorkspaceError
from refactor_engine.patching.workspace import Workspace

logger = logging.getLogger(__name__)


def _next_sequence(state: EngineState) -> int:
    return len(state["history"]) + 1


def route_entry(state: EngineState) -> str:
    """Router from START: fresh requests, resumed answers and cancels."""
    phase = state["phase"]
    if phase == Phase.INTAKE:
        return "intake"
    if phase == Phase.BLOCKED_ON_CLARIFICATION:
        if state["cancelled"]:
            return "abort"
        if state["pending_answer"] is not None:
            return "analyze"
    return "end"


def intake_node(state: EngineState) -> dict:
    """Accept the request; everything else is decided in Analyzing."""
    logger.info("intake: %r (scope=%s)", state["request"].goal, list(state["request"].scope))
    return {"clarification": None, "pending_answer": None}


def make_analyze_node(
    workspace: Workspace, predicate: AmbiguityPredicate
) -> Callable[[EngineState], dict]:
    """Factory: returns a node closure that resolves scope or blocks.

    The closure folds a pending answer into ``answers``, runs the ambiguity
    predicate and either records the resolved targets with a snapshot of
    their pre-request contents, or moves to BlockedOnClarification with a
    question and a blocked IterationRecord.
    """

    def analyze_node(state: EngineState) -> dict:
        update = enter(state, Phase.ANALYZING)
        new_answers = []
        if state["pending_answer"] is not None:
            new_answers.append(state["pending_answer"])
        answers = list(state["answers"]) + new_answers

        request_tree = None
        try:
            analysis = predicate(state["request"], workspace, answers)
            if not analysis.is_ambiguous:
                request_tree = workspace.snapshot(list(analysis.target_paths))
        except WorkspaceError as exc:
            analysis = ScopeAnalysis(
                question=ClarificationQuestion(
                    question=f"{exc}. Which files should the refactor change?"
                )
            )

        update.update({"answers": new_answers, "pending_answer": None})
        if analysis.is_ambiguous:
            logger.info("analysis blocked: %s", analysis.question.question)
            record = IterationRecord(
                sequence=_next_sequence(state),
                outcome=IterationOutcome.BLOCKED_ON_CLARIFICATION,
            )
            update.update(
                {
                    "phase": Phase.BLOCKED_ON_CLARIFICATION,
                    "transitions": update["transitions"]
                    + ["analyzing->blocked_on_clarification"],
                    "clarification": analysis.question,
                    "history": [record],
                }
            )
            return update

        targets = list(analysis.target_paths)
        logger.info("analysis resolved %d target file(s)", len(targets))
        update.update(
            {
                "target_paths": targets,
                "request_tree": request_tree,
                "clarification": None,
            }
        )
        return update

    return analyze_node


def route_after_analyze(state: EngineState) -> str:
    if state["phase"] == Phase.BLOCKED_ON_CLARIFICATION:
        return "blocked"
    return "plan"


def make_plan_node(planner: Planner) -> Callable[[EngineState], dict]:
    """Factory: returns a node closure that asks the planner for a PatchSet.

    On error: records a failed IterationRecord; a rejected goal is not
    retryable, any other planner failure is.
    """

    def plan_node(state: EngineState) -> dict:
        update = enter(state, Phase.PLANNING)
        count = state["planning_count"] + 1
        update["planning_count"] = count
        plan_request = PlanRequest(
            request=state["request"],
            iteration=count,
            target_paths=tuple(state["target_paths"]),
            files=state["request_tree"] or FileTree(),
            failure_context=tuple(state["failure_context"]),
            clarifications=tuple(answer.text for answer in state["answers"] if answer.text),
            module_system=state["module_system"],
        )
        try:
            proposal = planner.propose(plan_request)
        except Exception as exc:
            message = f"plan_node error: {exc}"
            logger.warning(message)
            update.update(
                {
                    "patch_set": None,
                    "plan_text": None,
                    "risk": None,
                    "attempt_error": message,
                    "retryable": not isinstance(exc, DirectiveValidationError),
                    "history": [
                        IterationRecord(
                            sequence=_next_sequence(state),
                            outcome=IterationOutcome.FAILED,
                            error=message,
                        )
                    ],
                    "errors": [message],
                }
            )
            return update

        logger.info(
            "planning entry %d/%d proposed changes to %d path(s)",
            count,
            state["max_iterations"],
            len(proposal.patch_set.touched_paths()),
        )
        update.update(
            {
                "plan_text": proposal.plan_text,
                "patch_set": proposal.patch_set,
                "risk": None,
                "attempt_error": None,
                "retryable": True,
            }
        )
        return update

    return plan_node


def make_patch_node(
    workspace: Workspace, classifier: RiskClassifier
) -> Callable[[EngineState], dict]:
    """Factory: returns a node closure that classifies and applies the PatchSet.

    The rollback plan is computed before anything is written. A HunkConflict,
    PathCollision or workspace failure leaves the tree untouched and is
    recorded as a failed attempt.
    """

    def patch_node(state: EngineState) -> dict:
        update = enter(state, Phase.PATCHING)
        patch_set = state["patch_set"]
        risk = None
        try:
            snapshot = workspace.snapshot(patch_set.touched_paths())
            risk = classifier.classify(patch_set, state["request"].constraints, tree=snapshot)
            before, _after, rollback_plan = workspace.commit(patch_set)
        except PatchError as exc:
            message = f"patch_node error: {exc}"
            logger.warning(message)
            update.update(
                {
                    "risk": risk,
                    "attempt_error": message,
                    "retryable": state["replan_on_conflict"],
                    "history": [
                        IterationRecord(
                            sequence=_next_sequence(state),
                            patch_set=patch_set,
                            risk=risk,
                            outcome=IterationOutcome.FAILED,
                            error=message,
                        )
                    ],
                    "errors": [message],
                }
            )
            return update

        logger.info("applied patch set (risk=%s)", risk.level.value)
        update.update(
            {
                "risk": risk,
                "pre_apply_tree": before,
                "rollback_plan": rollback_plan,
                "applied": True,
                "rolled_back": False,
            }
        )
        return update

    return patch_node


def route_after_attempt_step(cancel_event: threading.Event) -> Callable[[EngineState], str]:
    """Router after Planning or Patching: continue, re-plan or abort."""

    def route(state: EngineState) -> str:
        if cancel_event.is_set():
            return "abort"
        if state["attempt_error"] is None:
            return "continue"
        if state["retryable"] and has_budget(state):
            return "iterate"
        return "abort"

    return route


def make_validate_node(
    runner: ValidationRunner, workspace: Workspace, classifier: RiskClassifier
) -> Callable[[EngineState], dict]:
    """Factory: returns a node closure that runs the ValidationPlan.

    Formatter edits found in the results' post-run tree are folded back into
    the PatchSet, and its rollback plan and risk are recomputed.

    On a runner or fold-back error the attempt fails with an attempt error.
    """

    def validate_node(state: EngineState) -> dict:
        update = enter(state, Phase.VALIDATING)
        patch_set = state["patch_set"]
        watch = patch_set.touched_paths()
        try:
            results = runner.run(
                state["validation_plan"],
                cwd=state["repo_path"],
                watch_paths=watch,
                workspace=workspace,
            )
            update["results"] = results
            on_disk = latest_tree_after(results)
            before = state["pre_apply_tree"]
            if on_disk and before is not None:
                applied = apply_patch_set(patch_set, before)
                changed = [path for path, content in on_disk.items() if content != applied.read(path)]
                if changed:
                    logger.info("folding validation-time edits in %s into the patch set", changed)
                    folded = rebuild_patch_set(before, on_disk)
                    rollback_plan = invert_patch_set(folded, before)
                    workspace.pending_rollback = rollback_plan
                    update.update(
                        {
                            "patch_set": folded,
                            "rollback_plan": rollback_plan,
                            "risk": classifier.classify(
                                folded, state["request"].constraints, tree=before
                            ),
                        }
                    )
        except (ValidationRunnerError, PatchError) as exc:
            message = f"validate_node error: {exc}"
            logger.warning(message)
            update.setdefault("results", [])
            update.update({"attempt_error": message, "errors": [message]})
        return update

    return validate_node


def make_critique_node(critic: ConstraintCritic) -> Callable[[EngineState], dict]:
    """Factory: returns a node closure that decides the attempt's outcome.

    The attempt passes only when every result passed, no attempt error is
    pending and the critic finds no hidden behavior change.
    """

    def critique_node(state: EngineState) -> dict:
        update = enter(state, Phase.CRITIQUING)
        findings = critic.critique(
            state["request"], state["patch_set"], state["risk"], tree=state["pre_apply_tree"]
        )
        results = state["results"]
        passed = (
            state["attempt_error"] is None
            and all(result.passed for result in results)
            and not findings
        )
        record = IterationRecord(
            sequence=_next_sequence(state),
            patch_set=state["patch_set"],
            risk=state["risk"],
            results=tuple(results),
            outcome=IterationOutcome.PASSED if passed else IterationOutcome.FAILED,
            critique=tuple(findings),
            error=state["attempt_error"],
        )
        logger.info("iteration %d %s", record.sequence, record.outcome.value)
        update["history"] = [record]
        return update

    return critique_node


def make_critique_router(cancel_event: threading.Event) -> Callable[[EngineState], str]:
    """Router after Critiquing: finalize, iterate or abort."""

    def route(state: EngineState) -> str:
        if cancel_event.is_set():
            return "abort"
        if state["history"][-1].outcome == IterationOutcome.PASSED:
            return "finalize"
        if has_budget(state):
            return "iterate"
        return "abort"

    return route


def make_iterate_node(workspace: Workspace) -> Callable[[EngineState], dict]:
    """Factory: returns a node closure that reverts the failed attempt.

    Every plan targets the pre-request tree, so the applied PatchSet is
    undone through its RollbackPlan and the failure is folded into the next
    plan request.
    """

    def iterate_node(state: EngineState) -> dict:
        update = enter(state, Phase.ITERATING)
        if state["applied"] and state["rollback_plan"] is not None:
            try:
                workspace.rollback(state["rollback_plan"])
            except PatchError as exc:
                message = f"iterate_node rollback error: {exc}"
                logger.error(message)
                update.update({"attempt_error": message, "retryable": False, "errors": [message]})
                return update

        update.update(
            {
                "applied": False,
                "rollback_plan": None,
                "pre_apply_tree": None,
                "results": [],
                "attempt_error": None,
                "retryable": True,
                "failure_context": failure_context(state["history"][-1]),
            }
        )
        return update

    return iterate_node


def make_iterate_router(cancel_event: threading.Event) -> Callable[[EngineState], str]:
    def route(state: EngineState) -> str:
        if cancel_event.is_set() or state["attempt_error"] is not None:
            return "abort"
        return "plan"

    return route


def finalize_node(state: EngineState) -> dict:
    """Terminal success; the RollbackPlan stays in state for the caller."""
    logger.info("finalized after %d planning entries", state["planning_count"])
    return enter(state, Phase.FINALIZED)


def make_abort_node(
    workspace: Workspace, cancel_event: threading.Event
) -> Callable[[EngineState], dict]:
    """Factory: returns a node closure that reverts any applied patch and aborts.

    Writes an ``ABORT:`` summary to ``errors``.
    """

    def abort_node(state: EngineState) -> dict:
        update = enter(state, Phase.ABORTED)
        cancelled = state["cancelled"] or cancel_event.is_set()
        errors: list[str] = []
        reverted = False
        applied = state["applied"]
        if applied and state["rollback_plan"] is not None:
            try:
                workspace.rollback(state["rollback_plan"])
                reverted = True
                applied = False
            except PatchError as exc:
                errors.append(f"abort_node rollback error: {exc}")
                logger.error("rollback failed: %s", exc)

        summary = abort_summary({**state, "cancelled": cancelled}, reverted)
        logger.warning(summary)
        update.update(
            {
                "cancelled": cancelled,
                "applied": applied,
                "rolled_back": reverted,
                "errors": errors + [summary],
            }
        )
        return update

    return abort_node


def build_graph(
    planner: Planner,
    runner: ValidationRunner,
    workspace: Workspace,
    classifier: RiskClassifier | None = None,
    critic: ConstraintCritic | None = None,
    ambiguity_predicate: AmbiguityPredicate | None = None,
    cancel_event: threading.Event | None = None,
):
    """Build and compile the phase StateGraph.

    Edge topology:
      START -> conditional(route_entry) -> {intake, analyze, abort, END}
      intake -> analyze -> conditional -> {plan, END (blocked)}
      plan -> conditional -> {patch, iterate, abort}
      patch -> conditional -> {validate, iterate, abort}
      validate -> critique -> conditional -> {finalize, iterate, abort}
      iterate -> conditional -> {plan, abort}
      finalize -> END, abort -> END

    No checkpointer: the engine keeps the returned state and re-invokes the
    graph with it to resume after a clarification.

    Args:
        planner: Produces a Proposal per Planning entry.
        runner: Executes the ValidationPlan.
        workspace: Disk-backed working tree of the repository.
        classifier: Risk classifier (default: ESM RiskClassifier).
        critic: Self-critique collaborator (default: ConstraintCritic).
        ambiguity_predicate: Scope resolution (default:
            default_ambiguity_predicate).
        cancel_event: Set by the caller to abort at the next routing point.

    Returns:
        CompiledStateGraph ready to invoke.

    Raises:
        GraphBuildError: If graph construction fails.
    """
    classifier = classifier or RiskClassifier()
    critic = critic or ConstraintCritic()
    predicate = ambiguity_predicate or default_ambiguity_predicate
    cancel_event = cancel_event or threading.Event()

    try:
        graph = StateGraph(EngineState)

        graph.add_node("intake_node", intake_node)
        graph.add_node("analyze_node", make_analyze_node(workspace, predicate))
        graph.add_node("plan_node", make_plan_node(planner))
        graph.add_node("patch_node", make_patch_node(workspace, classifier))
        graph.add_node("validate_node", make_validate_node(runner, workspace, classifier))
        graph.add_node("critique_node", make_critique_node(critic))
        graph.add_node("iterate_node", make_iterate_node(workspace))
        graph.add_node("finalize_node", finalize_node)
        graph.add_node("abort_node", make_abort_node(workspace, cancel_event))

        graph.add_conditional_edges(
            START,
            route_entry,
            {
                "intake": "intake_node",
                "analyze": "analyze_node",
                "abort": "abort_node",
                "end": END,
            },
        )
        graph.add_edge("intake_node", "analyze_node")
        graph.add_conditional_edges(
            "analyze_node",
            route_after_analyze,
            {"plan": "plan_node", "blocked": END},
        )

        attempt_router = route_after_attempt_step(cancel_event)
        graph.add_conditional_edges(
            "plan_node",
            attempt_router,
            {"continue": "patch_node", "iterate": "iterate_node", "abort": "abort_node"},
        )
        graph.add_conditional_edges(
            "patch_node",
            attempt_router,
            {"continue": "validate_node", "iterate": "iterate_node", "abort": "abort_node"},
        )

        # Validating -> Critiquing always, pass or fail
        graph.add_edge("validate_node", "critique_node")
        graph.add_conditional_edges(
            "critique_node",
            make_critique_router(cancel_event),
            {"finalize": "finalize_node", "iterate": "iterate_node", "abort": "abort_node"},
        )
        graph.add_conditional_edges(
            "iterate_node",
            make_iterate_router(cancel_event),
            {"plan": "plan_node", "abort": "abort_node"},
        )
        graph.add_edge("finalize_node", END)
        graph.add_edge("abort_node", END)

        return graph.compile()

    except Exception as exc:
        raise GraphBuildError(f"Failed to build orchestrator graph: {exc}") from exc
