import asyncio

import pytest

from coursecopy.models.schemas import CopyTask
from coursecopy.services.storage import DocumentStore
from coursecopy.services.upserts import InvalidTaskError, MissingParentError, apply_task


def _apply(store: DocumentStore, target: str, task: CopyTask):
    async def scenario():
        async with store.transaction() as txn:
            return await apply_task(store, target, task, txn)

    return asyncio.run(scenario())


def test_subject_upsert_creates_then_matches_by_slug(store: DocumentStore, seed):
    seed("dst")
    task = CopyTask(type="subject", key="src:algebra", data={"slug": "algebra", "name": "Algebra", "order": 1})

    first = _apply(store, "dst", task)
    second = _apply(store, "dst", task)

    assert first.created is True
    assert second.created is False and second.updated is False
    assert second.entity["id"] == first.entity["id"]
    assert asyncio.run(store.count("subjects", {"course_id": "dst"})) == 1


def test_slug_collision_updates_order_and_keeps_target_name(store: DocumentStore, seed):
    ids = seed("dst", [{"name": "algebra", "order": 5}])
    task = CopyTask(type="subject", key="src:algebra", data={"slug": "algebra", "name": "Algebra", "order": 1})

    outcome = _apply(store, "dst", task)

    assert outcome.created is False
    assert outcome.updated is True
    subject = asyncio.run(store.get("subjects", ids["subject:algebra"]))
    assert subject["order"] == 1
    assert subject["name"] == "algebra"


def test_chapter_without_parent_subject_is_missing_parent(store: DocumentStore, seed):
    seed("dst")
    task = CopyTask(
        type="chapter",
        key="src:algebra/basics",
        data={"subject_slug": "algebra", "slug": "basics", "name": "Basics", "order": 0},
    )

    with pytest.raises(MissingParentError):
        _apply(store, "dst", task)


def test_question_matches_on_exact_text_within_test(store: DocumentStore, seed):
    seed("dst", [{
        "name": "Algebra",
        "chapters": [{"name": "Basics", "topics": [{"name": "Sets", "tests": [
            {"title": "Sets Quiz", "questions": ["What is a set?"]},
        ]}]}],
    }])
    base = {"subject_slug": "algebra", "chapter_slug": "basics", "topic_slug": "sets", "test_slug": "sets-quiz"}

    same = _apply(store, "dst", CopyTask(
        type="question", key="k1", data={**base, "question_text": "What is a set?", "order": 0},
    ))
    different = _apply(store, "dst", CopyTask(
        type="question", key="k2", data={**base, "question_text": "what is a set?", "order": 1, "options": ["x", "y"]},
    ))

    assert same.created is False
    assert different.created is True
    assert different.entity["options"] == ["x", "y"]
    assert asyncio.run(store.count("questions")) == 2


def test_unknown_task_type_and_missing_fields_are_invalid(store: DocumentStore, seed):
    seed("dst")

    with pytest.raises(InvalidTaskError):
        _apply(store, "dst", CopyTask.model_construct(type="lesson", key="x", data={}))
    with pytest.raises(InvalidTaskError):
        _apply(store, "dst", CopyTask(type="subject", key="x", data={"slug": "algebra"}))
