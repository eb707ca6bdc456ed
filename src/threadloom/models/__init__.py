"""数据模型（审计相关模型见 threadloom.models.audit）。"""

from threadloom.models.directive import (
    ClimaxProtection,
    ConstraintType,
    Directive,
    DirectorConstraint,
    DirectorProposal,
    Intensity,
    Pacing,
    ProposedAnchor,
    RequiredAction,
    TensionCurve,
    ThreadAnchor,
)
from threadloom.models.selection import (
    HorizonState,
    PulseColor,
    SelectionResult,
    ThreadHealthMetrics,
)
from threadloom.models.thread import (
    CATEGORY_KARMA,
    ProgressType,
    SummaryEntry,
    Thread,
    ThreadCategory,
    ThreadStatus,
)

__all__ = [
    "CATEGORY_KARMA",
    "ClimaxProtection",
    "ConstraintType",
    "Directive",
    "DirectorConstraint",
    "DirectorProposal",
    "HorizonState",
    "Intensity",
    "Pacing",
    "ProgressType",
    "ProposedAnchor",
    "PulseColor",
    "RequiredAction",
    "SelectionResult",
    "SummaryEntry",
    "TensionCurve",
    "Thread",
    "ThreadAnchor",
    "ThreadCategory",
    "ThreadHealthMetrics",
    "ThreadStatus",
]
