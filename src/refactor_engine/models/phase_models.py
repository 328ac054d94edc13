"""Lifecycle phases of a refactor request."""

from enum import Enum


class Phase(str, Enum):
    """Phase of the request state machine."""

    INTAKE = "intake"
    ANALYZING = "analyzing"
    BLOCKED_ON_CLARIFICATION = "blocked_on_clarification"
    PLANNING = "planning"
    PATCHING = "patching"
    VALIDATING = "validating"
    CRITIQUING = "critiquing"
    ITERATING = "iterating"
    FINALIZED = "finalized"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.FINALIZED, Phase.ABORTED)
