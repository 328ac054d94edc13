"""Exceptions for agent operations."""


class AgentError(Exception):
    """Base exception for all agent operations."""


class PlanningError(AgentError):
    """Raised when a patch proposal cannot be produced or parsed."""


class DirectiveValidationError(AgentError):
    """Raised when the request goal is invalid or potentially malicious."""


class ValidationRunnerError(AgentError):
    """Raised when the validation plan cannot be executed at all."""


class ValidationBusyError(ValidationRunnerError):
    """Raised when a validation run is started while another is in flight."""
