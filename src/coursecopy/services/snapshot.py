"""Snapshot and restore of a course's full content subtree."""

import logging

from ..models.schemas import CourseSnapshot
from .storage import DocumentStore

logger = logging.getLogger(__name__)


async def snapshot_target(store: DocumentStore, course_id: str) -> CourseSnapshot:
    """In-memory copy of every subject, chapter, topic, test and question row of a course."""
    tests = await store.find("tests", {"course_id": course_id})
    test_ids = [t["id"] for t in tests]
    snapshot = CourseSnapshot(
        course_id=course_id,
        subjects=await store.find("subjects", {"course_id": course_id}),
        chapters=await store.find("chapters", {"course_id": course_id}),
        topics=await store.find("topics", {"course_id": course_id}),
        tests=tests,
        questions=await store.find("questions", {"test_id": test_ids}) if test_ids else [],
    )
    logger.info(
        f"Snapshot of course {course_id}: {len(snapshot.subjects)} subjects, {len(snapshot.chapters)} chapters, "
        f"{len(snapshot.topics)} topics, {len(snapshot.tests)} tests, {len(snapshot.questions)} questions"
    )
    return snapshot


async def restore_snapshot(store: DocumentStore, course_id: str, snapshot: CourseSnapshot) -> None:
    """
    Replace the course's current subtree with the snapshot rows, original
    ids included, in a single transaction.
    """
    if snapshot.course_id != course_id:
        raise ValueError(f"Snapshot belongs to course {snapshot.course_id}, not {course_id}")

    async with store.transaction() as txn:
        current_tests = await store.find("tests", {"course_id": course_id}, txn=txn)
        test_ids = {t["id"] for t in current_tests} | {t["id"] for t in snapshot.tests}
        if test_ids:
            await store.delete_many("questions", {"test_id": test_ids}, txn=txn)
        for collection in ("tests", "topics", "chapters", "subjects"):
            await store.delete_many(collection, {"course_id": course_id}, txn=txn)

        for collection in ("subjects", "chapters", "topics", "tests", "questions"):
            await store.insert_many(collection, getattr(snapshot, collection), txn=txn)

    logger.warning(f"Restored course {course_id} to its pre-copy snapshot")
