"""Flatten a source course into an ordered list of idempotent copy tasks."""

import logging
from collections import defaultdict
from typing import Any, Dict, List

from ..models.schemas import Chapter, CopyTask, Question, Subject, Test, Topic
from . import identity
from .identity import slugify
from .storage import DocumentStore

logger = logging.getLogger(__name__)


def _grouped(docs: List[Dict[str, Any]], field: str) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for doc in docs:
        grouped[doc.get(field)].append(doc)
    return grouped


async def build_copy_tasks(store: DocumentStore, source_course_id: str, include_tests: bool) -> List[CopyTask]:
    """
    Build copy tasks for every entity in the source course.

    Tasks come out depth-first (subject, its chapters, each chapter's topics,
    each topic's tests and their questions) so that applying them in order
    always upserts a parent before any of its children.
    """
    subjects = await store.find("subjects", {"course_id": source_course_id}, sort=["order", "name"])
    chapters = _grouped(
        await store.find("chapters", {"course_id": source_course_id}, sort=["order", "name"]),
        "subject_id",
    )
    topics = _grouped(
        await store.find("topics", {"course_id": source_course_id}, sort=["order", "name"]),
        "chapter_id",
    )

    tests: Dict[str, List[Dict[str, Any]]] = {}
    questions: Dict[str, List[Dict[str, Any]]] = {}
    if include_tests:
        test_docs = await store.find("tests", {"course_id": source_course_id}, sort=["title"])
        tests = _grouped(test_docs, "topic_id")
        test_ids = [doc["id"] for doc in test_docs]
        if test_ids:
            questions = _grouped(
                await store.find("questions", {"test_id": test_ids}, sort=["order", "question_text"]),
                "test_id",
            )

    tasks: List[CopyTask] = []
    for raw_subject in subjects:
        subject = Subject.model_validate(raw_subject)
        s_slug = slugify(subject.name)
        tasks.append(CopyTask(
            type="subject",
            key=identity.subject_key(source_course_id, s_slug),
            data={"slug": s_slug, "name": subject.name, "order": subject.order},
        ))

        for raw_chapter in chapters.get(subject.id, []):
            chapter = Chapter.model_validate(raw_chapter)
            c_slug = slugify(chapter.name)
            tasks.append(CopyTask(
                type="chapter",
                key=identity.chapter_key(source_course_id, s_slug, c_slug),
                data={
                    "subject_slug": s_slug,
                    "slug": c_slug,
                    "name": chapter.name,
                    "order": chapter.order,
                },
            ))

            for raw_topic in topics.get(chapter.id, []):
                topic = Topic.model_validate(raw_topic)
                t_slug = slugify(topic.name)
                tasks.append(CopyTask(
                    type="topic",
                    key=identity.topic_key(source_course_id, s_slug, c_slug, t_slug),
                    data={
                        "subject_slug": s_slug,
                        "chapter_slug": c_slug,
                        "slug": t_slug,
                        "name": topic.name,
                        "order": topic.order,
                    },
                ))

                for raw_test in tests.get(topic.id, []):
                    test = Test.model_validate(raw_test)
                    x_slug = slugify(test.title)
                    tasks.append(CopyTask(
                        type="test",
                        key=identity.sectional_test_key(source_course_id, s_slug, c_slug, t_slug, x_slug),
                        data={
                            "subject_slug": s_slug,
                            "chapter_slug": c_slug,
                            "topic_slug": t_slug,
                            "slug": x_slug,
                            "title": test.title,
                            "duration_minutes": test.duration_minutes,
                            "total_marks": test.total_marks,
                        },
                    ))

                    for raw in questions.get(test.id, []):
                        question = Question.model_validate(raw)
                        tasks.append(CopyTask(
                            type="question",
                            key=identity.question_key(
                                source_course_id, s_slug, c_slug, t_slug, x_slug, question.question_text
                            ),
                            data={
                                "subject_slug": s_slug,
                                "chapter_slug": c_slug,
                                "topic_slug": t_slug,
                                "test_slug": x_slug,
                                "question_text": question.question_text,
                                "direction": question.direction,
                                "options": question.options.to_raw(),
                                "correct_option_index": question.correct_option_index,
                                "marks": question.marks,
                                "negative_marks": question.negative_marks,
                                "explanation": question.explanation,
                                "type": question.type,
                                "order": question.order,
                            },
                        ))

    logger.info(f"Built {len(tasks)} copy task(s) from course {source_course_id}")
    return tasks
