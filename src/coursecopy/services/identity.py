"""Identity helpers shared by the copy engine: slugs and question digests."""

import hashlib
import re
import unicodedata

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(value) -> str:
    """
    Lowercase, strict slug: accents folded to ASCII, every run of
    non-alphanumeric characters collapsed to a single hyphen.

    "Algebra", "algebra" and " ALGEBRA! " all map to "algebra".
    """
    text = unicodedata.normalize("NFKD", str(value or ""))
    text = text.encode("ascii", "ignore").decode("ascii").lower()
    return _NON_ALNUM.sub("-", text).strip("-")


def question_digest(question_text: str) -> str:
    """Short content hash of a question's text (exact, not normalized)."""
    return hashlib.sha256((question_text or "").encode("utf-8")).hexdigest()[:16]


def subject_key(course_id: str, subject_slug: str) -> str:
    return f"{course_id}:{subject_slug}"


def chapter_key(course_id: str, subject_slug: str, chapter_slug: str) -> str:
    return f"{course_id}:{subject_slug}/{chapter_slug}"


def topic_key(course_id: str, subject_slug: str, chapter_slug: str, topic_slug: str) -> str:
    return f"{course_id}:{subject_slug}/{chapter_slug}/{topic_slug}"


def sectional_test_key(course_id: str, subject_slug: str, chapter_slug: str, topic_slug: str, test_slug: str) -> str:
    return f"{topic_key(course_id, subject_slug, chapter_slug, topic_slug)}:{test_slug}"


def question_key(
    course_id: str,
    subject_slug: str,
    chapter_slug: str,
    topic_slug: str,
    test_slug: str,
    question_text: str,
) -> str:
    base = sectional_test_key(course_id, subject_slug, chapter_slug, topic_slug, test_slug)
    return f"{base}:q:{question_digest(question_text)}"
