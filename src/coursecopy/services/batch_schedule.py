"""Batch schedules: which subject a batch currently has unlocked."""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from ..models.schemas import Batch, BatchViewResponse, Course, ScheduleEntry, SubjectView
from .storage import DocumentStore

logger = logging.getLogger(__name__)

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


class ScheduleError(Exception):
    """Invalid schedule or active-subject request."""
    pass


class ScheduleNotFoundError(ScheduleError):
    """Referenced course, batch or subject does not exist."""
    pass


class SubjectLockedError(ScheduleError):
    """Requested subject is not the batch's active subject."""
    pass


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def resolve_active_subject(schedule: Sequence[ScheduleEntry], now: datetime) -> Optional[str]:
    """
    Subject of the latest schedule entry that has opened by ``now``.

    Entries without an opening time count as already open and rank before
    every dated entry. Returns None when nothing has opened yet.
    """
    now = _as_utc(now)
    eligible = [entry for entry in schedule if entry.open_at is None or _as_utc(entry.open_at) <= now]
    if not eligible:
        return None
    eligible.sort(key=lambda entry: _as_utc(entry.open_at) or _EARLIEST)
    return eligible[-1].subject_id


def next_open_at(schedule: Sequence[ScheduleEntry], now: datetime) -> Optional[datetime]:
    """Earliest opening time strictly after ``now``."""
    now = _as_utc(now)
    upcoming = sorted(
        _as_utc(entry.open_at) for entry in schedule if entry.open_at is not None and _as_utc(entry.open_at) > now
    )
    return upcoming[0] if upcoming else None


class BatchScheduleService:
    """Reads and updates batch schedules in the document store."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def load_batch(self, batch_id: str) -> Batch:
        doc = await self.store.get("batches", batch_id)
        if doc is None:
            raise ScheduleNotFoundError("Batch not found")
        return Batch.model_validate(doc)

    async def apply_schedule(self, batch: Batch, now: Optional[datetime] = None) -> Batch:
        """
        Resolve the active subject for ``now`` and persist it only when it
        differs from the stored value; the stored value is a cache of the
        last resolution.
        """
        resolved = resolve_active_subject(batch.schedule, now or datetime.now(timezone.utc))
        if resolved and resolved != batch.active_subject_id:
            await self.store.update("batches", batch.id, {"active_subject_id": resolved})
            logger.info(f"Batch {batch.id} active subject -> {resolved}")
            batch = batch.model_copy(update={"active_subject_id": resolved})
        return batch

    async def course_view(self, course_id: str, batch_id: str, now: Optional[datetime] = None) -> BatchViewResponse:
        now = now or datetime.now(timezone.utc)
        course_doc = await self.store.get("courses", course_id)
        if course_doc is None:
            raise ScheduleNotFoundError("Course not found")
        batch = await self.load_batch(batch_id)
        if course_id not in batch.linked_course_ids():
            raise ScheduleError("Batch not linked to this course")

        batch = await self.apply_schedule(batch, now)
        subjects = await self.store.find("subjects", {"course_id": course_id}, sort=["order", "name"])
        views: List[SubjectView] = []
        for subject in subjects:
            unlocked = bool(batch.active_subject_id) and subject["id"] == batch.active_subject_id
            views.append(SubjectView(
                id=subject["id"],
                name=subject.get("name", ""),
                order=int(subject.get("order") or 0),
                is_unlocked=unlocked,
                status="open" if unlocked else "locked",
            ))
        return BatchViewResponse(
            course=Course.model_validate(course_doc),
            batch=batch,
            subjects=views,
            next_open_at=next_open_at(batch.schedule, now),
        )

    async def set_active_subject(self, batch_id: str, subject_id: Optional[str]) -> Batch:
        if not subject_id:
            raise ScheduleError("subjectId is required")
        batch = await self.load_batch(batch_id)
        subject = await self.store.get("subjects", subject_id)
        if subject is None:
            raise ScheduleNotFoundError("Subject not found")
        linked = batch.linked_course_ids()
        if linked and subject.get("course_id") not in linked:
            raise ScheduleError("Subject does not belong to this batch's courses")

        await self.store.update("batches", batch.id, {"active_subject_id": subject_id})
        return batch.model_copy(update={"active_subject_id": subject_id})

    async def upsert_schedule_entry(
        self, batch_id: str, subject_id: Optional[str], open_at: Optional[datetime]
    ) -> List[ScheduleEntry]:
        """Add a schedule entry for a subject, or move its opening time."""
        if not subject_id:
            raise ScheduleError("subjectId is required")
        batch = await self.load_batch(batch_id)
        schedule = list(batch.schedule)
        for index, entry in enumerate(schedule):
            if entry.subject_id == subject_id:
                schedule[index] = ScheduleEntry(subject_id=subject_id, open_at=open_at)
                break
        else:
            schedule.append(ScheduleEntry(subject_id=subject_id, open_at=open_at))

        await self.store.update(
            "batches", batch.id, {"schedule": [entry.model_dump(mode="json") for entry in schedule]}
        )
        return schedule

    async def ensure_subject_unlocked(self, batch_id: str, subject_id: str) -> None:
        batch = await self.load_batch(batch_id)
        if not batch.active_subject_id or batch.active_subject_id != subject_id:
            raise SubjectLockedError("This subject is locked for this batch.")
