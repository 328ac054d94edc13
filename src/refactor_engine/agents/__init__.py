"""Collaborator agents for the refactor engine."""

from refactor_engine.agents.exceptions import (
    AgentError,
    DirectiveValidationError,
    PlanningError,
    ValidationBusyError,
    ValidationRunnerError,
)
from refactor_engine.agents.critic import ConstraintCritic
from refactor_engine.agents.planner import (
    LLMPatchPlanner,
    Planner,
    PlanRequest,
    Proposal,
    ProtocolFilePlanner,
)
from refactor_engine.agents.risk_classifier import RiskClassifier, classify
from refactor_engine.agents.validation_runner import (
    ValidationRunner,
    detect_validation_plan,
    parse_command_spec,
)

__all__ = [
    "AgentError",
    "ConstraintCritic",
    "DirectiveValidationError",
    "LLMPatchPlanner",
    "PlanRequest",
    "Planner",
    "PlanningError",
    "Proposal",
    "ProtocolFilePlanner",
    "RiskClassifier",
    "ValidationBusyError",
    "ValidationRunner",
    "ValidationRunnerError",
    "classify",
    "detect_validation_plan",
    "parse_command_spec",
]
