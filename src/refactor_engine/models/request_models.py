"""Request-related models for the refactor engine."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

from refactor_engine.models.protocol_models import ClarificationQuestion


class RequestConstraints(BaseModel):
    """Constraint flags accepted with a refactor request."""

    model_config = ConfigDict(frozen=True)

    no_new_dependencies: bool = True
    behavior_preserving: bool = True
    allow_breaking: bool = False


class RefactorRequest(BaseModel):
    """A single natural-language refactor request. Immutable once accepted."""

    model_config = ConfigDict(frozen=True)

    goal: str
    scope: tuple[str, ...] = ()  # Relative POSIX globs
    constraints: RequestConstraints = Field(default_factory=RequestConstraints)

    @field_validator("goal")
    @classmethod
    def _goal_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("goal cannot be empty or whitespace-only")
        return value.strip()

    @field_validator("scope")
    @classmethod
    def _normalize_scope(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(pattern.strip().replace("\\", "/") for pattern in value if pattern.strip())


class ScopeAnalysis(BaseModel):
    """Outcome of the ambiguity check: resolved targets or a question to ask."""

    model_config = ConfigDict(frozen=True)

    target_paths: tuple[str, ...] = ()
    question: ClarificationQuestion | None = None

    @property
    def is_ambiguous(self) -> bool:
        return self.question is not None
