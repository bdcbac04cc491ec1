import asyncio
import copy
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest


repo_root = Path(__file__).resolve().parents[1]
src_dir = repo_root / "src"
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

from coursecopy.services.storage import DocumentStore  # noqa: E402


async def _seed_course(store: DocumentStore, course_id: str, subjects: List[Dict[str, Any]]) -> Dict[str, str]:
    """
    Insert a course and its nested tree. Returns name -> id for every row,
    keyed ``subject:<name>``, ``chapter:<name>``, ``topic:<name>``,
    ``test:<title>`` and ``question:<text>``.
    """
    ids: Dict[str, str] = {}
    if await store.get("courses", course_id) is None:
        await store.insert("courses", {"id": course_id, "name": course_id, "title": course_id.title()})
    for s_index, subject in enumerate(subjects):
        s = await store.insert("subjects", {
            "course_id": course_id, "name": subject["name"], "order": subject.get("order", s_index),
        })
        ids[f"subject:{subject['name']}"] = s["id"]
        for c_index, chapter in enumerate(subject.get("chapters", [])):
            c = await store.insert("chapters", {
                "course_id": course_id, "subject_id": s["id"],
                "name": chapter["name"], "order": chapter.get("order", c_index),
            })
            ids[f"chapter:{chapter['name']}"] = c["id"]
            for t_index, topic in enumerate(chapter.get("topics", [])):
                t = await store.insert("topics", {
                    "course_id": course_id, "subject_id": s["id"], "chapter_id": c["id"],
                    "name": topic["name"], "order": topic.get("order", t_index),
                })
                ids[f"topic:{topic['name']}"] = t["id"]
                for test in topic.get("tests", []):
                    x = await store.insert("tests", {
                        "course_id": course_id, "subject_id": s["id"], "chapter_id": c["id"], "topic_id": t["id"],
                        "title": test["title"], "duration_minutes": test.get("duration_minutes", 30),
                        "total_marks": test.get("total_marks", 0),
                    })
                    ids[f"test:{test['title']}"] = x["id"]
                    for q_index, question in enumerate(test.get("questions", [])):
                        q = await store.insert("questions", {
                            "test_id": x["id"], "question_text": question,
                            "options": ["A", "B", "C", "D"], "correct_option_index": 0, "order": q_index,
                        })
                        ids[f"question:{question}"] = q["id"]
    return ids


ALGEBRA_TREE = [
    {
        "name": "Algebra",
        "order": 1,
        "chapters": [
            {
                "name": "Basics",
                "topics": [
                    {
                        "name": "Sets",
                        "tests": [{"title": "Sets Quiz", "questions": ["What is a set?", "Is {} a set?"]}],
                    }
                ],
            }
        ],
    }
]


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(base_dir=str(tmp_path / "data"), lock_timeout=5)


@pytest.fixture
def seed(store: DocumentStore):
    def _seed(course_id: str, subjects: List[Dict[str, Any]] = ()) -> Dict[str, str]:
        return asyncio.run(_seed_course(store, course_id, list(subjects)))

    return _seed


@pytest.fixture
def algebra_tree() -> List[Dict[str, Any]]:
    return copy.deepcopy(ALGEBRA_TREE)
