"""Exceptions for orchestrator operations."""


class OrchestratorError(Exception):
    """Base exception for all orchestrator operations."""


class GraphBuildError(OrchestratorError):
    """Raised when graph construction fails."""


class ConcurrentRequestError(OrchestratorError):
    """Raised when a second request or run starts while one is in flight."""


class NoActiveRequestError(OrchestratorError):
    """Raised when answering or cancelling without a blocked request."""
