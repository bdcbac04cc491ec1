"""Idempotent create-or-update operations, one per content entity kind."""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from ..models.schemas import CopyTask
from .identity import slugify
from .storage import DocumentStore, Transaction

logger = logging.getLogger(__name__)


class MissingParentError(Exception):
    """Raised when an upsert cannot resolve a required parent by slug in the target course."""
    pass


class InvalidTaskError(ValueError):
    """Raised for a copy task whose type or payload is malformed."""
    pass


@dataclass
class UpsertOutcome:
    entity: Dict[str, Any]
    created: bool
    updated: bool = False


async def _find_by_slug(
    store: DocumentStore,
    collection: str,
    scope: Dict[str, Any],
    title_field: str,
    slug: str,
    txn: Transaction,
) -> Optional[Dict[str, Any]]:
    # Sorted so that pre-existing duplicates always resolve to the same row.
    for doc in await store.find(collection, scope, sort=["order", title_field, "id"], txn=txn):
        if slugify(doc.get(title_field)) == slug:
            return doc
    return None


async def _require(
    store: DocumentStore,
    collection: str,
    scope: Dict[str, Any],
    title_field: str,
    slug: str,
    txn: Transaction,
    label: str,
) -> Dict[str, Any]:
    doc = await _find_by_slug(store, collection, scope, title_field, slug, txn)
    if doc is None:
        raise MissingParentError(f"{label} '{slug}' not found in target course {scope.get('course_id')}")
    return doc


async def resolve_subject(store: DocumentStore, course_id: str, subject_slug: str, txn: Transaction) -> Dict[str, Any]:
    return await _require(store, "subjects", {"course_id": course_id}, "name", subject_slug, txn, "Subject")


async def resolve_chapter(
    store: DocumentStore, course_id: str, subject_slug: str, chapter_slug: str, txn: Transaction
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    subject = await resolve_subject(store, course_id, subject_slug, txn)
    chapter = await _require(
        store, "chapters", {"course_id": course_id, "subject_id": subject["id"]}, "name", chapter_slug, txn, "Chapter"
    )
    return subject, chapter


async def resolve_topic(
    store: DocumentStore, course_id: str, payload: Dict[str, Any], txn: Transaction
) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
    subject, chapter = await resolve_chapter(store, course_id, payload["subject_slug"], payload["chapter_slug"], txn)
    topic = await _require(
        store,
        "topics",
        {"course_id": course_id, "subject_id": subject["id"], "chapter_id": chapter["id"]},
        "name",
        payload["topic_slug"],
        txn,
        "Topic",
    )
    return subject, chapter, topic


async def _upsert(
    store: DocumentStore,
    collection: str,
    scope: Dict[str, Any],
    title_field: str,
    slug: str,
    fields: Dict[str, Any],
    compared: Sequence[str],
    txn: Transaction,
) -> UpsertOutcome:
    existing = await _find_by_slug(store, collection, scope, title_field, slug, txn)
    if existing is None:
        created = await store.insert(collection, {**scope, **fields}, txn=txn)
        return UpsertOutcome(entity=created, created=True)

    patch = {field: fields[field] for field in compared if existing.get(field) != fields[field]}
    if not patch:
        return UpsertOutcome(entity=existing, created=False)
    updated = await store.update(collection, existing["id"], patch, txn=txn)
    return UpsertOutcome(entity=updated or existing, created=False, updated=True)


async def upsert_subject(store: DocumentStore, target_course_id: str, payload: Dict[str, Any], txn: Transaction) -> UpsertOutcome:
    return await _upsert(
        store,
        "subjects",
        {"course_id": target_course_id},
        "name",
        payload["slug"],
        {"name": payload["name"], "order": payload["order"]},
        ("order",),
        txn,
    )


async def upsert_chapter(store: DocumentStore, target_course_id: str, payload: Dict[str, Any], txn: Transaction) -> UpsertOutcome:
    subject = await resolve_subject(store, target_course_id, payload["subject_slug"], txn)
    return await _upsert(
        store,
        "chapters",
        {"course_id": target_course_id, "subject_id": subject["id"]},
        "name",
        payload["slug"],
        {"name": payload["name"], "order": payload["order"]},
        ("order",),
        txn,
    )


async def upsert_topic(store: DocumentStore, target_course_id: str, payload: Dict[str, Any], txn: Transaction) -> UpsertOutcome:
    subject, chapter = await resolve_chapter(
        store, target_course_id, payload["subject_slug"], payload["chapter_slug"], txn
    )
    return await _upsert(
        store,
        "topics",
        {"course_id": target_course_id, "subject_id": subject["id"], "chapter_id": chapter["id"]},
        "name",
        payload["slug"],
        {"name": payload["name"], "order": payload["order"]},
        ("order",),
        txn,
    )


async def upsert_test(store: DocumentStore, target_course_id: str, payload: Dict[str, Any], txn: Transaction) -> UpsertOutcome:
    subject, chapter, topic = await resolve_topic(store, target_course_id, payload, txn)
    return await _upsert(
        store,
        "tests",
        {
            "course_id": target_course_id,
            "subject_id": subject["id"],
            "chapter_id": chapter["id"],
            "topic_id": topic["id"],
        },
        "title",
        payload["slug"],
        {
            "title": payload["title"],
            "duration_minutes": payload["duration_minutes"],
            "total_marks": payload["total_marks"],
        },
        ("duration_minutes", "total_marks"),
        txn,
    )


QUESTION_FIELDS = (
    "question_text",
    "direction",
    "options",
    "correct_option_index",
    "marks",
    "negative_marks",
    "explanation",
    "type",
    "order",
)


async def upsert_question(store: DocumentStore, target_course_id: str, payload: Dict[str, Any], txn: Transaction) -> UpsertOutcome:
    """
    Questions match on exact question text inside the target test. Only
    ``order`` is compared on an existing question; edited content in the
    target is left as it is.
    """
    _, _, topic = await resolve_topic(store, target_course_id, payload, txn)
    test = await _require(
        store,
        "tests",
        {"course_id": target_course_id, "topic_id": topic["id"]},
        "title",
        payload["test_slug"],
        txn,
        "Test",
    )
    scope = {"test_id": test["id"]}
    existing = await store.find_one("questions", {**scope, "question_text": payload["question_text"]}, txn=txn)
    if existing is None:
        fields = {field: payload.get(field) for field in QUESTION_FIELDS}
        created = await store.insert("questions", {**scope, **fields}, txn=txn)
        return UpsertOutcome(entity=created, created=True)
    if existing.get("order") == payload["order"]:
        return UpsertOutcome(entity=existing, created=False)
    updated = await store.update("questions", existing["id"], {"order": payload["order"]}, txn=txn)
    return UpsertOutcome(entity=updated or existing, created=False, updated=True)


Upsert = Callable[[DocumentStore, str, Dict[str, Any], Transaction], Awaitable[UpsertOutcome]]

UPSERTS: Dict[str, Upsert] = {
    "subject": upsert_subject,
    "chapter": upsert_chapter,
    "topic": upsert_topic,
    "test": upsert_test,
    "question": upsert_question,
}

REQUIRED_KEYS = {
    "subject": ("slug", "name", "order"),
    "chapter": ("subject_slug", "slug", "name", "order"),
    "topic": ("subject_slug", "chapter_slug", "slug", "name", "order"),
    "test": ("subject_slug", "chapter_slug", "topic_slug", "slug", "title", "duration_minutes", "total_marks"),
    "question": ("subject_slug", "chapter_slug", "topic_slug", "test_slug", "question_text", "order"),
}


async def apply_task(store: DocumentStore, target_course_id: str, task: CopyTask, txn: Transaction) -> UpsertOutcome:
    """Dispatch one copy task to the upsert for its entity kind."""
    upsert = UPSERTS.get(task.type)
    if upsert is None:
        raise InvalidTaskError(f"Unknown task type: {task.type}")
    missing = [key for key in REQUIRED_KEYS[task.type] if key not in task.data]
    if missing:
        raise InvalidTaskError(f"Task {task.key} is missing payload field(s): {', '.join(missing)}")
    return await upsert(store, target_course_id, task.data, txn)
