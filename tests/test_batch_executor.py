import asyncio

from coursecopy.models.schemas import CopyPlan, CopyTask
from coursecopy.services.batch_executor import BatchExecutor, partition
from coursecopy.services.storage import DocumentStore, TransientStorageError
from coursecopy.services.task_builder import build_copy_tasks


def _executor(store: DocumentStore, sleeps: list) -> BatchExecutor:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return BatchExecutor(store, backoff_base_seconds=0.1, sleep=fake_sleep)


def _fail_commits(monkeypatch, store: DocumentStore, times: int) -> list:
    calls = []
    real_write = store._write_collections

    def flaky_write(payload, versions):
        calls.append(sorted(payload))
        if len(calls) <= times:
            raise TransientStorageError("Write conflict on collection 'subjects'")
        return real_write(payload, versions)

    monkeypatch.setattr(store, "_write_collections", flaky_write)
    return calls


def test_partition_keeps_order():
    tasks = [CopyTask(type="subject", key=str(i), data={}) for i in range(5)]
    batches = partition(tasks, 2)
    assert [[t.key for t in b] for b in batches] == [["0", "1"], ["2", "3"], ["4"]]


def test_backoff_grows_by_factor_three(store: DocumentStore):
    executor = BatchExecutor(store, backoff_base_seconds=0.2)
    assert [round(executor.backoff_delay(n), 6) for n in (1, 2, 3)] == [0.2, 0.6, 1.8]


def test_copy_into_empty_target(store: DocumentStore, seed, algebra_tree):
    seed("src", algebra_tree)
    seed("dst")
    sleeps = []

    async def scenario():
        tasks = await build_copy_tasks(store, "src", include_tests=True)
        return await _executor(store, sleeps).execute_batches("dst", tasks, CopyPlan(batch_size=4, retries=2))

    result = asyncio.run(scenario())

    assert result.copied.model_dump() == {"subjects": 1, "chapters": 1, "topics": 1, "tests": 1, "questions": 2}
    assert result.skipped == 0
    assert result.batches.model_dump() == {"processed": 2, "total": 2}
    assert result.errors == []
    assert sleeps == []


def test_failed_commit_is_retried_with_backoff(monkeypatch, store: DocumentStore, seed, algebra_tree):
    seed("src", algebra_tree)
    seed("dst")
    sleeps = []
    calls = _fail_commits(monkeypatch, store, times=2)

    async def scenario():
        tasks = await build_copy_tasks(store, "src", include_tests=False)
        return await _executor(store, sleeps).execute_batches("dst", tasks, CopyPlan(batch_size=50, retries=2))

    result = asyncio.run(scenario())

    assert len(calls) == 3
    assert [round(s, 6) for s in sleeps] == [0.1, 0.3]
    assert result.errors == []
    assert result.copied.topics == 1
    assert asyncio.run(store.count("topics", {"course_id": "dst"})) == 1


def test_batch_is_abandoned_after_retries_and_others_continue(monkeypatch, store: DocumentStore, seed, algebra_tree):
    seed("src", algebra_tree)
    seed("dst")
    sleeps = []
    _fail_commits(monkeypatch, store, times=2)

    async def scenario():
        tasks = await build_copy_tasks(store, "src", include_tests=False)
        return await _executor(store, sleeps).execute_batches("dst", tasks, CopyPlan(batch_size=1, retries=1))

    result = asyncio.run(scenario())

    # Batch 1 (the subject) fails twice and is dropped; its children then miss their parent.
    assert result.errors[0].key == "batch:1"
    assert result.errors[0].code == "batch_abandoned"
    assert {e.code for e in result.errors[1:]} == {"missing_parent"}
    assert result.batches.processed == 2
    assert result.batches.total == 3
    assert sleeps == [0.1]
    assert asyncio.run(store.count("subjects", {"course_id": "dst"})) == 0


def test_task_error_does_not_sink_the_batch(store: DocumentStore, seed):
    seed("dst")
    tasks = [
        CopyTask(type="chapter", key="src:ghost/basics",
                 data={"subject_slug": "ghost", "slug": "basics", "name": "Basics", "order": 0}),
        CopyTask(type="subject", key="src:algebra", data={"slug": "algebra", "name": "Algebra", "order": 0}),
    ]

    result = asyncio.run(_executor(store, []).execute_batches("dst", tasks, CopyPlan()))

    assert [(e.key, e.code) for e in result.errors] == [("src:ghost/basics", "missing_parent")]
    assert result.copied.subjects == 1
    assert result.batches.processed == 1


def test_second_run_skips_everything(store: DocumentStore, seed, algebra_tree):
    seed("src", algebra_tree)
    seed("dst")

    async def scenario():
        executor = _executor(store, [])
        tasks = await build_copy_tasks(store, "src", include_tests=True)
        await executor.execute_batches("dst", tasks, CopyPlan())
        return len(tasks), await executor.execute_batches("dst", tasks, CopyPlan())

    total, second = asyncio.run(scenario())

    assert second.copied.total() == 0
    assert second.skipped == total
    assert second.updated.total() == 0


def test_overwrite_prunes_what_the_source_lacks(store: DocumentStore, seed, algebra_tree):
    seed("src", algebra_tree)
    seed("dst", [
        {"name": "Algebra", "chapters": [{"name": "Basics", "topics": [
            {"name": "Sets", "tests": [{"title": "Old Quiz", "questions": ["stale?"]}]},
            {"name": "Relations"},
        ]}]},
        {"name": "History", "chapters": [{"name": "Ancient", "topics": [
            {"name": "Rome", "tests": [{"title": "Rome Quiz", "questions": ["When?"]}]},
        ]}]},
    ])

    async def scenario():
        tasks = await build_copy_tasks(store, "src", include_tests=True)
        return await _executor(store, []).execute_batches("dst", tasks, CopyPlan(), mode="OVERWRITE")

    result = asyncio.run(scenario())

    def names(collection, field):
        return sorted(d[field] for d in asyncio.run(store.find(collection, {"course_id": "dst"})))

    assert names("subjects", "name") == ["Algebra"]
    assert names("chapters", "name") == ["Basics"]
    assert names("topics", "name") == ["Sets"]
    assert names("tests", "title") == ["Sets Quiz"]
    assert result.deleted.subjects == 1
    assert result.deleted.topics == 2
    assert result.deleted.tests == 2
    assert result.deleted.questions == 2
    dst_tests = asyncio.run(store.find("tests", {"course_id": "dst"}))
    remaining = asyncio.run(store.find("questions", {"test_id": [t["id"] for t in dst_tests]}, sort=["order"]))
    assert [q["question_text"] for q in remaining] == ["What is a set?", "Is {} a set?"]
    assert asyncio.run(store.count("questions", {"question_text": ["stale?", "When?"]})) == 0
