"""LangGraph phase state machine for refactor requests."""

from refactor_engine.orchestrator.engine import RefactorEngine
from refactor_engine.orchestrator.exceptions import (
    ConcurrentRequestError,
    GraphBuildError,
    NoActiveRequestError,
    OrchestratorError,
)
from refactor_engine.orchestrator.graph import build_graph
from refactor_engine.orchestrator.recovery import ABORT_PREFIX, default_ambiguity_predicate
from refactor_engine.orchestrator.state import EngineState, make_initial_state

__all__ = [
    "ABORT_PREFIX",
    "ConcurrentRequestError",
    "EngineState",
    "GraphBuildError",
    "NoActiveRequestError",
    "OrchestratorError",
    "RefactorEngine",
    "build_graph",
    "default_ambiguity_predicate",
    "make_initial_state",
]
