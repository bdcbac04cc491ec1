"""Models package initialization."""

from .schemas import (
    CanonicalNode,
    CanonicalResult,
    CopyPlan,
    CopyTask,
    CourseSnapshot,
    ExecutionResult,
    KindCounters,
    Question,
    QuestionOptions,
    VerifyResult,
)

__all__ = [
    "CanonicalNode",
    "CanonicalResult",
    "CopyPlan",
    "CopyTask",
    "CourseSnapshot",
    "ExecutionResult",
    "KindCounters",
    "Question",
    "QuestionOptions",
    "VerifyResult",
]
