"""Canonical, order-stable representation of a course's content tree."""

import hashlib
import json
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Set

from ..models.schemas import CanonicalNode, CanonicalResult, StructureCounts
from .identity import slugify
from .storage import DocumentStore

logger = logging.getLogger(__name__)


def _node(kind: str, doc: Dict[str, Any], title_field: str, with_order: bool = True) -> CanonicalNode:
    title = str(doc.get(title_field) or "")
    return CanonicalNode(
        kind=kind,
        id=doc.get("id"),
        title=title,
        slug=slugify(title),
        order=int(doc.get("order") or 0) if with_order else 0,
    )


def _sorted_nodes(nodes: Iterable[CanonicalNode], by_order: bool = True) -> List[CanonicalNode]:
    if by_order:
        return sorted(nodes, key=lambda n: (n.order, n.slug))
    return sorted(nodes, key=lambda n: n.slug)


def _group(docs: Iterable[Dict[str, Any]], field: str) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for doc in docs:
        grouped[doc.get(field)].append(doc)
    return grouped


async def load_tree(store: DocumentStore, course_id: str, include_tests: bool) -> List[CanonicalNode]:
    """
    Load a course's subjects, chapters and topics (and tests when asked)
    into a nested tree. Siblings sort by (order, slug); tests by slug only.
    Rows whose parent is missing are not reachable and are left out.
    """
    subjects = await store.find("subjects", {"course_id": course_id})
    chapters = _group(await store.find("chapters", {"course_id": course_id}), "subject_id")
    topics = _group(await store.find("topics", {"course_id": course_id}), "chapter_id")
    tests = _group(await store.find("tests", {"course_id": course_id}), "topic_id") if include_tests else {}

    tree = []
    for subject in subjects:
        subject_node = _node("subject", subject, "name")
        chapter_nodes = []
        for chapter in chapters.get(subject["id"], []):
            chapter_node = _node("chapter", chapter, "name")
            topic_nodes = []
            for topic in topics.get(chapter["id"], []):
                topic_node = _node("topic", topic, "name")
                if include_tests:
                    topic_node.children = _sorted_nodes(
                        (_node("test", test, "title", with_order=False) for test in tests.get(topic["id"], [])),
                        by_order=False,
                    )
                topic_nodes.append(topic_node)
            chapter_node.children = _sorted_nodes(topic_nodes)
            chapter_nodes.append(chapter_node)
        subject_node.children = _sorted_nodes(chapter_nodes)
        tree.append(subject_node)
    return _sorted_nodes(tree)


def _hash_view(node: CanonicalNode) -> Dict[str, Any]:
    # Order only matters through sibling position, so it is not part of the digest.
    return {
        "kind": node.kind,
        "slug": node.slug,
        "children": [_hash_view(child) for child in node.children],
    }


def serialize_tree(tree: List[CanonicalNode]) -> str:
    """Stable string form of a canonical tree."""
    return json.dumps(
        [_hash_view(node) for node in tree],
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def tree_hash(tree: List[CanonicalNode]) -> str:
    return hashlib.sha256(serialize_tree(tree).encode("utf-8")).hexdigest()


def count_tree(tree: List[CanonicalNode], include_tests: bool) -> StructureCounts:
    subjects = len(tree)
    chapters = sum(len(s.children) for s in tree)
    topics = sum(len(c.children) for s in tree for c in s.children)
    tests = sum(len(t.children) for s in tree for c in s.children for t in c.children)
    return StructureCounts(
        sections=subjects + chapters,
        lessons=topics,
        quizzes=tests if include_tests else 0,
        assets=0,
    )


def canonical_paths(tree: List[CanonicalNode]) -> Set[str]:
    """
    Flatten a tree into slug paths:
    ``s``, ``s/c``, ``s/c/t`` and ``s/c/t:test``.
    """
    paths: Set[str] = set()
    for subject in tree:
        paths.add(subject.slug)
        for chapter in subject.children:
            chapter_path = f"{subject.slug}/{chapter.slug}"
            paths.add(chapter_path)
            for topic in chapter.children:
                topic_path = f"{chapter_path}/{topic.slug}"
                paths.add(topic_path)
                for test in topic.children:
                    paths.add(f"{topic_path}:{test.slug}")
    return paths


async def compute_canonical(store: DocumentStore, course_id: str, include_tests: bool = True) -> CanonicalResult:
    """
    Canonical tree, content hash and counts for one course.

    Read-only; storage errors propagate and no partial result is returned.
    """
    tree = await load_tree(store, course_id, include_tests)
    result = CanonicalResult(
        canonical=tree,
        hash=tree_hash(tree),
        counts=count_tree(tree, include_tests),
    )
    logger.debug(f"Canonical hash for course {course_id}: {result.hash}")
    return result
