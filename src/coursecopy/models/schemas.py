"""Pydantic models for data validation and type safety."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


EntityKind = Literal["subject", "chapter", "topic", "test", "question"]
CopyModeName = Literal["MERGE", "OVERWRITE"]


class ApiModel(BaseModel):
    """Base for wire models: snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==========================================
# CONTENT ENTITIES (stored documents)
# ==========================================

class Course(BaseModel):
    id: str
    name: str = ""
    title: str = ""


class ContentEntity(BaseModel):
    """Stored content row. Null columns read as their defaults; a null title reads as empty."""

    @model_validator(mode="before")
    @classmethod
    def _null_columns(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        cleaned = {key: value for key, value in data.items() if value is not None}
        for field in ("name", "title", "question_text"):
            if field in cls.model_fields and cleaned.get(field) is None:
                cleaned[field] = ""
        return cleaned


class Subject(ContentEntity):
    id: Optional[str] = None
    course_id: str
    name: str
    order: int = 0


class Chapter(ContentEntity):
    id: Optional[str] = None
    course_id: str
    subject_id: str
    name: str
    order: int = 0


class Topic(ContentEntity):
    id: Optional[str] = None
    course_id: str
    subject_id: str
    chapter_id: str
    name: str
    order: int = 0


class Test(ContentEntity):
    __test__ = False  # not a pytest class

    id: Optional[str] = None
    course_id: str
    subject_id: str
    chapter_id: str
    topic_id: str
    title: str
    duration_minutes: int = 30
    total_marks: int = 0


class QuestionOptions(BaseModel):
    """
    Answer options as a tagged variant.

    Stored questions carry either a plain list ("indexed") or a label map
    ("keyed"); the variant is resolved once when the question is read.
    """
    kind: Literal["indexed", "keyed"] = "indexed"
    items: List[str] = Field(default_factory=list)
    entries: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "QuestionOptions":
        if isinstance(raw, QuestionOptions):
            return raw
        if isinstance(raw, dict):
            if raw.get("kind") in ("indexed", "keyed"):
                return cls.model_validate(raw)
            return cls(kind="keyed", entries={str(k): str(v) for k, v in raw.items()})
        if isinstance(raw, (list, tuple)):
            return cls(kind="indexed", items=[str(item) for item in raw])
        return cls()

    def to_raw(self) -> Union[List[str], Dict[str, str]]:
        if self.kind == "keyed":
            return dict(self.entries)
        return list(self.items)

    def __len__(self) -> int:
        return len(self.entries) if self.kind == "keyed" else len(self.items)


class Question(ContentEntity):
    id: Optional[str] = None
    test_id: str
    question_text: str
    direction: str = ""
    options: QuestionOptions = Field(default_factory=QuestionOptions)
    correct_option_index: int = 0
    marks: float = 1
    negative_marks: float = 0
    explanation: str = ""
    type: str = "mcq"
    order: int = 0

    @field_validator("options", mode="before")
    @classmethod
    def resolve_options(cls, v: Any) -> QuestionOptions:
        return QuestionOptions.from_raw(v)


# ==========================================
# COPY ENGINE TYPES
# ==========================================

class CanonicalNode(BaseModel):
    """Transient tree node used for comparison and hashing."""
    kind: EntityKind
    slug: str
    title: str
    order: int = 0
    id: Optional[str] = None
    children: List["CanonicalNode"] = Field(default_factory=list)


CanonicalNode.model_rebuild()


class StructureCounts(ApiModel):
    sections: int = 0
    lessons: int = 0
    quizzes: int = 0
    assets: int = 0


class CanonicalResult(BaseModel):
    canonical: List[CanonicalNode]
    hash: str
    counts: StructureCounts


class CopyTask(BaseModel):
    """One unit of idempotent copy work, keyed by the target position path."""
    type: EntityKind
    key: str
    data: Dict[str, Any]


class CopyPlan(ApiModel):
    batch_size: int = 50
    retries: int = 2


class KindCounters(BaseModel):
    subjects: int = 0
    chapters: int = 0
    topics: int = 0
    tests: int = 0
    questions: int = 0

    def bump(self, kind: str, amount: int = 1) -> None:
        field = f"{kind}s"
        setattr(self, field, getattr(self, field) + amount)

    def absorb(self, other: "KindCounters") -> None:
        for field in type(self).model_fields:
            setattr(self, field, getattr(self, field) + getattr(other, field))

    def total(self) -> int:
        return sum(getattr(self, field) for field in type(self).model_fields)


class CopyError(ApiModel):
    key: str
    message: str
    code: str = "unknown_error"


class BatchProgress(ApiModel):
    processed: int = 0
    total: int = 0


class ExecutionResult(BaseModel):
    copied: KindCounters = Field(default_factory=KindCounters)
    updated: KindCounters = Field(default_factory=KindCounters)
    deleted: KindCounters = Field(default_factory=KindCounters)
    skipped: int = 0
    errors: List[CopyError] = Field(default_factory=list)
    batches: BatchProgress = Field(default_factory=BatchProgress)

    def absorb(self, other: "ExecutionResult") -> None:
        self.copied.absorb(other.copied)
        self.updated.absorb(other.updated)
        self.deleted.absorb(other.deleted)
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        self.batches.processed += other.batches.processed
        self.batches.total += other.batches.total


class VerifyResult(BaseModel):
    matched: bool
    attempts: int
    source: CanonicalResult
    target: CanonicalResult
    missing: List[str] = Field(default_factory=list)
    reconcile: ExecutionResult = Field(default_factory=ExecutionResult)


class CourseSnapshot(BaseModel):
    course_id: str
    subjects: List[Dict[str, Any]] = Field(default_factory=list)
    chapters: List[Dict[str, Any]] = Field(default_factory=list)
    topics: List[Dict[str, Any]] = Field(default_factory=list)
    tests: List[Dict[str, Any]] = Field(default_factory=list)
    questions: List[Dict[str, Any]] = Field(default_factory=list)


# ==========================================
# COPY-STRUCTURE API
# ==========================================

class CopyPlanRequest(ApiModel):
    batch_size: Optional[int] = None
    retries: Optional[int] = None


class CopyStructureRequest(ApiModel):
    # Checked by CopyOrchestrator.validate, not here.
    source_course_id: Optional[Any] = None
    target_course_id: Optional[Any] = None
    mode: Optional[Any] = "MERGE"
    include_sectional_tests: bool = True
    plan: Optional[CopyPlanRequest] = None
    dry_run: bool = False


class CanonicalSummary(ApiModel):
    counts: StructureCounts
    hash: str


class PlanSummary(ApiModel):
    total_items: int
    total_batches: int
    batch_size: int
    retries: int


class CopyDryRunResponse(ApiModel):
    success: bool = True
    dry_run: bool = True
    source: CanonicalSummary
    target: CanonicalSummary
    plan: PlanSummary
    mode: CopyModeName


class CopiedSummary(ApiModel):
    sections: int = 0
    lessons: int = 0
    quizzes: int = 0
    questions: int = 0

    @classmethod
    def from_counters(cls, counters: KindCounters) -> "CopiedSummary":
        return cls(
            sections=counters.subjects + counters.chapters,
            lessons=counters.topics,
            quizzes=counters.tests,
            questions=counters.questions,
        )


class VerifySummary(ApiModel):
    matched: bool
    attempts: int
    source_hash: str
    target_hash: str
    source_counts: StructureCounts
    target_counts: StructureCounts


class CopyRunResponse(ApiModel):
    success: bool
    incomplete: bool
    copied: CopiedSummary
    copied_by_kind: KindCounters
    updated: int = 0
    deleted: KindCounters = Field(default_factory=KindCounters)
    skipped: int = 0
    batches: BatchProgress
    verify: VerifySummary
    errors: List[CopyError] = Field(default_factory=list)
    rolled_back: bool = False
    mode: CopyModeName


# ==========================================
# BATCH SCHEDULE / LOCK STATE
# ==========================================

class ScheduleEntry(ApiModel):
    subject_id: str
    open_at: Optional[datetime] = None


class Batch(ApiModel):
    id: str
    name: str
    course_id: Optional[str] = None
    course_ids: List[str] = Field(default_factory=list)
    active_subject_id: Optional[str] = None
    schedule: List[ScheduleEntry] = Field(default_factory=list)

    def linked_course_ids(self) -> List[str]:
        return [cid for cid in [self.course_id, *self.course_ids] if cid]


class SetActiveSubjectRequest(ApiModel):
    subject_id: Optional[str] = None


class ScheduleEntryRequest(ApiModel):
    subject_id: Optional[str] = None
    open_at: Optional[datetime] = None


class SubjectView(ApiModel):
    id: str
    name: str
    order: int = 0
    is_unlocked: bool
    status: Literal["open", "completed", "locked"]


LockScope = Literal["subject", "section", "topic"]
LockStatus = Literal["locked", "unlocked", "active"]


class LockSchedule(ApiModel):
    unlock_at: Optional[datetime] = None


class LockAction(ApiModel):
    scope: Optional[str] = None
    target_id: Optional[str] = None
    op: Optional[str] = None
    auto_lock_siblings: bool = False
    schedule: Optional[LockSchedule] = None


class LockApplyRequest(ApiModel):
    course_id: Optional[str] = None
    batch_id: Optional[str] = None
    actions: Optional[List[Optional[LockAction]]] = None
    idempotency_key: Optional[str] = None
    dry_run: bool = False


class LockApplyResult(ApiModel):
    ok: bool = True
    changed: int = 0
    locked: int = 0
    unlocked: int = 0
    active_updated: int = 0
    dry_run: Optional[bool] = None


class BatchViewResponse(ApiModel):
    success: bool = True
    course: Course
    batch: Batch
    subjects: List[SubjectView]
    next_open_at: Optional[datetime] = None


class LockStateView(ApiModel):
    item_id: str
    scope: LockScope
    status: LockStatus
    unlock_at: Optional[datetime] = None
