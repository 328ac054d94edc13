"""Data models for the refactor engine."""

from refactor_engine.models.diff_models import (
    FileDiff,
    FileState,
    FileTree,
    Hunk,
    HunkLine,
    PatchSet,
    RollbackAction,
    RollbackPlan,
    RollbackStep,
)
from refactor_engine.models.phase_models import Phase
from refactor_engine.models.protocol_models import (
    EMPTY_SECTION,
    SECTION_NAMES,
    ClarificationAnswer,
    ClarificationQuestion,
    ProtocolDocument,
)
from refactor_engine.models.report_models import (
    FileRisk,
    IterationOutcome,
    IterationRecord,
    RiskAssessment,
    RiskLevel,
    ValidationCategory,
    ValidationCommand,
    ValidationPlan,
    ValidationResult,
    ValidationStatus,
)
from refactor_engine.models.request_models import (
    RefactorRequest,
    RequestConstraints,
    ScopeAnalysis,
)
from refactor_engine.models.schemas import ApiSymbol

__all__ = [
    "ApiSymbol",
    "EMPTY_SECTION",
    "SECTION_NAMES",
    "ClarificationAnswer",
    "ClarificationQuestion",
    "FileDiff",
    "FileRisk",
    "FileState",
    "FileTree",
    "Hunk",
    "HunkLine",
    "IterationOutcome",
    "IterationRecord",
    "PatchSet",
    "Phase",
    "ProtocolDocument",
    "RefactorRequest",
    "RequestConstraints",
    "RiskAssessment",
    "RiskLevel",
    "RollbackAction",
    "RollbackPlan",
    "RollbackStep",
    "ScopeAnalysis",
    "ValidationCategory",
    "ValidationCommand",
    "ValidationPlan",
    "ValidationResult",
    "ValidationStatus",
]
