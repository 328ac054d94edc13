"""Single-flight driver around the phase graph.

The engine owns the state of exactly one RefactorRequest. Each public call
runs the graph until it suspends in BlockedOnClarification or reaches a
terminal phase, and returns the rendered protocol document. A run that ends
in an exception, KeyboardInterrupt included, reverts any applied patch
before the exception propagates.
"""

import logging
import threading
from pathlib import Path

from refactor_engine.agents.critic import ConstraintCritic
from refactor_engine.agents.planner import Planner
from refactor_engine.agents.risk_classifier import RiskClassifier
from refactor_engine.agents.validation_runner import ValidationRunner
from refactor_engine.config import EngineConfig
from refactor_engine.models import Phase, ProtocolDocument, RefactorRequest, ValidationPlan
from refactor_engine.orchestrator.exceptions import (
    ConcurrentRequestError,
    NoActiveRequestError,
)
from refactor_engine.orchestrator.graph import build_graph
from refactor_engine.orchestrator.recovery import AmbiguityPredicate
from refactor_engine.orchestrator.state import EngineState, make_initial_state
from refactor_engine.patching.exceptions import PatchError
from refactor_engine.patching.workspace import Workspace
from refactor_engine.protocol.parser import parse_answer
from refactor_engine.protocol.renderer import render_document

logger = logging.getLogger(__name__)

# Graph steps per planning entry (plan, patch, validate, critique, iterate)
STEPS_PER_ITERATION = 6
BASE_RECURSION_LIMIT = 10


def recursion_limit(max_iterations: int) -> int:
    return BASE_RECURSION_LIMIT + STEPS_PER_ITERATION * max_iterations


class RefactorEngine:
    """Processes one RefactorRequest at a time, end to end.

    Args:
        repo_path: Repository root; the only tree the engine mutates.
        planner: Collaborator producing a Proposal per Planning entry.
        config: Project conventions read once at startup.
        runner: Validation runner (default: built from ``config``).
        classifier: Risk classifier (default: built from ``config``).
        critic: Self-critique collaborator.
        ambiguity_predicate: Scope resolution used in Analyzing.
        validation_plan: Explicit plan; defaults to ``config.validation_plan``.
    """

    def __init__(
        self,
        repo_path: str | Path,
        planner: Planner,
        config: EngineConfig | None = None,
        runner: ValidationRunner | None = None,
        classifier: RiskClassifier | None = None,
        critic: ConstraintCritic | None = None,
        ambiguity_predicate: AmbiguityPredicate | None = None,
        validation_plan: ValidationPlan | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.workspace = Workspace(repo_path)
        self.runner = runner or ValidationRunner(
            timeout_seconds=self.config.command_timeout_seconds,
            plan_timeout_seconds=self.config.plan_timeout_seconds,
        )
        self.validation_plan = validation_plan
        self._cancel_event = threading.Event()
        self._run_lock = threading.Lock()
        self._state: EngineState | None = None
        self._graph = build_graph(
            planner=planner,
            runner=self.runner,
            workspace=self.workspace,
            classifier=classifier or RiskClassifier(module_system=self.config.module_system),
            critic=critic,
            ambiguity_predicate=ambiguity_predicate,
            cancel_event=self._cancel_event,
        )

    @property
    def state(self) -> EngineState | None:
        return self._state

    @property
    def phase(self) -> Phase | None:
        return self._state["phase"] if self._state is not None else None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def submit(self, request: RefactorRequest) -> ProtocolDocument:
        """Accept a new request and run it until it blocks or terminates.

        Raises:
            ConcurrentRequestError: If a request is running or still blocked.
        """
        if self.is_running or (self._state is not None and not self._state["phase"].is_terminal):
            raise ConcurrentRequestError(
                "A refactor request is already in progress; finish or cancel it first"
            )
        plan = self.validation_plan or self.config.validation_plan(self.workspace.root)
        self._cancel_event.clear()
        state = make_initial_state(
            request=request,
            repo_path=str(self.workspace.root),
            validation_plan=plan,
            max_iterations=self.config.max_iterations,
            module_system=self.config.module_system,
            replan_on_conflict=self.config.replan_on_conflict,
        )
        return self._run(state)

    def answer(self, text: str) -> ProtocolDocument:
        """Resume a blocked request with a clarification answer.

        Raises:
            NoActiveRequestError: If no request is blocked on clarification.
            MalformedAnswer: If the answer lacks its free-text slot; the
                request stays blocked and may be re-prompted.
        """
        state = self._blocked_state()
        answer = parse_answer(text)
        if answer.cancel:
            return self._run({**state, "cancelled": True})
        return self._run({**state, "pending_answer": answer})

    def cancel(self) -> ProtocolDocument | None:
        """Cancel the current request.

        A blocked request is aborted immediately and the final document is
        returned. A running request stops at its next routing point (the
        validation runner stops after the command in progress); None is
        returned and the running call returns the aborted document.

        Raises:
            NoActiveRequestError: If there is nothing to cancel.
        """
        if self.is_running:
            logger.info("cancellation requested for the running request")
            self._cancel_event.set()
            self.runner.cancel()
            return None
        state = self._blocked_state()
        return self._run({**state, "cancelled": True})

    def render(self) -> ProtocolDocument:
        """Render the current state (all sections None before any request)."""
        return render_document(self._state or {})

    def _blocked_state(self) -> EngineState:
        if self._state is None or self._state["phase"] != Phase.BLOCKED_ON_CLARIFICATION:
            raise NoActiveRequestError("No refactor request is waiting for clarification")
        return self._state

    def _run(self, state: EngineState) -> ProtocolDocument:
        if not self._run_lock.acquire(blocking=False):
            raise ConcurrentRequestError("The engine is already running a request")
        try:
            result = self._graph.invoke(
                state, config={"recursion_limit": recursion_limit(state["max_iterations"])}
            )
            self._state = result
            self.workspace.pending_rollback = None
        except BaseException:
            self._rollback_interrupted()
            raise
        finally:
            self._run_lock.release()
        logger.info("request now %s", result["phase"].value)
        return render_document(result)

    def _rollback_interrupted(self) -> None:
        """Revert a patch left on disk by a run that ended in an exception."""
        plan = self.workspace.pending_rollback
        if plan is None:
            return
        logger.error("run interrupted with a patch applied; rolling back %d file(s)", len(plan.steps))
        try:
            self.workspace.rollback(plan)
        except PatchError as exc:
            logger.error("rollback after interruption failed: %s", exc)
