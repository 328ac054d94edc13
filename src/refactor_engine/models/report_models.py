"""Report models for risk assessment, validation and iteration history."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from refactor_engine.models.diff_models import PatchSet

_RISK_ORDER = {"low": 0, "medium": 1, "high": 2}


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self.value]

    @classmethod
    def highest(cls, levels: list["RiskLevel"]) -> "RiskLevel":
        return max(levels, key=lambda level: level.rank, default=cls.LOW)


class FileRisk(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    level: RiskLevel
    justification: str


class RiskAssessment(BaseModel):
    """Severity classification of a PatchSet, derived and never mutated."""

    model_config = ConfigDict(frozen=True)

    level: RiskLevel
    justification: str
    file_risks: tuple[FileRisk, ...] = ()


class ValidationCategory(str, Enum):
    TYPECHECK = "typecheck"
    LINT = "lint"
    TEST = "test"
    FORMAT = "format"


class ValidationCommand(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: str                           # Shell-like invocation, split with shlex
    category: ValidationCategory
    success_exit_codes: frozenset[int] = frozenset({0})
    fatal: bool = False                    # Skip remaining commands when this one fails
    timeout_seconds: float | None = None   # Falls back to the runner default

    def is_success(self, exit_code: int) -> bool:
        return exit_code in self.success_exit_codes


class ValidationPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    commands: tuple[ValidationCommand, ...] = ()


class ValidationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: ValidationCommand
    status: ValidationStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    note: str | None = None
    # Watched paths after the command ran; None marks a file that no longer exists
    tree_after: dict[str, str | None] = Field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.status == ValidationStatus.PASSED

    @property
    def is_infrastructure_failure(self) -> bool:
        return self.status == ValidationStatus.TIMEOUT


class IterationOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED_ON_CLARIFICATION = "blocked_on_clarification"


class IterationRecord(BaseModel):
    """Immutable record of one Plan -> Patch -> Validate attempt."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    patch_set: PatchSet | None = None
    risk: RiskAssessment | None = None
    results: tuple[ValidationResult, ...] = ()
    outcome: IterationOutcome
    critique: tuple[str, ...] = ()
    error: str | None = None
    recorded_at: datetime = Field(default_factory=datetime.now)
