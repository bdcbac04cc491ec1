import asyncio

from coursecopy.services.canonical import canonical_paths, compute_canonical
from coursecopy.services.identity import question_digest, slugify
from coursecopy.services.storage import DocumentStore


def test_slugify_folds_case_accents_and_punctuation():
    assert slugify("Algebra") == slugify("algebra") == slugify("  ALGEBRA! ") == "algebra"
    assert slugify("Théorie des Ensembles") == "theorie-des-ensembles"
    assert slugify("C++ / Basics") == "c-basics"
    assert slugify(None) == ""


def test_question_digest_is_exact_text():
    assert question_digest("What is a set?") == question_digest("What is a set?")
    assert question_digest("What is a set?") != question_digest("what is a set?")
    assert len(question_digest("x")) == 16


def test_canonical_counts_and_paths(store: DocumentStore, seed, algebra_tree):
    seed("src", algebra_tree)

    result = asyncio.run(compute_canonical(store, "src", include_tests=True))

    assert result.counts.sections == 2
    assert result.counts.lessons == 1
    assert result.counts.quizzes == 1
    assert canonical_paths(result.canonical) == {
        "algebra",
        "algebra/basics",
        "algebra/basics/sets",
        "algebra/basics/sets:sets-quiz",
    }


def test_canonical_without_tests_ignores_quizzes(store: DocumentStore, seed, algebra_tree):
    seed("src", algebra_tree)

    with_tests = asyncio.run(compute_canonical(store, "src", include_tests=True))
    without = asyncio.run(compute_canonical(store, "src", include_tests=False))

    assert without.counts.quizzes == 0
    assert with_tests.hash != without.hash


def test_hash_is_deterministic_and_tracks_new_slugs(store: DocumentStore, seed):
    seed("src", [{"name": "Algebra", "order": 1}, {"name": "Geometry", "order": 2}])

    first = asyncio.run(compute_canonical(store, "src")).hash
    second = asyncio.run(compute_canonical(store, "src")).hash
    assert first == second

    seed("src", [{"name": "Calculus", "order": 3}])
    assert asyncio.run(compute_canonical(store, "src")).hash != first


def test_hash_follows_sort_position_not_raw_order(store: DocumentStore, seed):
    ids = seed("src", [{"name": "Algebra", "order": 1}, {"name": "Geometry", "order": 2}])
    baseline = asyncio.run(compute_canonical(store, "src")).hash

    async def set_orders(algebra: int, geometry: int):
        await store.update("subjects", ids["subject:Algebra"], {"order": algebra})
        await store.update("subjects", ids["subject:Geometry"], {"order": geometry})

    # Same relative position: hash unchanged.
    asyncio.run(set_orders(10, 20))
    assert asyncio.run(compute_canonical(store, "src")).hash == baseline

    # Swapped position: hash changes.
    asyncio.run(set_orders(2, 1))
    assert asyncio.run(compute_canonical(store, "src")).hash != baseline


def test_same_shape_in_two_courses_hashes_equal(store: DocumentStore, seed, algebra_tree):
    seed("a", algebra_tree)
    algebra_tree[0]["name"] = "ALGEBRA"
    seed("b", algebra_tree)

    a = asyncio.run(compute_canonical(store, "a"))
    b = asyncio.run(compute_canonical(store, "b"))
    assert a.hash == b.hash
