"""Batched, transactional application of copy tasks to a target course."""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..config import settings
from ..models.schemas import CopyPlan, CopyTask, ExecutionResult, KindCounters
from .error_recovery import ErrorRecovery
from .identity import slugify
from .storage import DocumentStore, StorageError, Transaction
from .upserts import apply_task

logger = logging.getLogger(__name__)


# kind -> (collection, parent field used by everything below it, collections below)
_CASCADE = {
    "subject": ("subjects", "subject_id", ("chapters", "topics", "tests")),
    "chapter": ("chapters", "chapter_id", ("topics", "tests")),
    "topic": ("topics", "topic_id", ("tests",)),
}


async def delete_cascade(
    store: DocumentStore,
    course_id: str,
    kind: str,
    ids: Sequence[str],
    txn: Transaction,
) -> KindCounters:
    """Delete subjects, chapters, topics or tests together with everything beneath them."""
    deleted = KindCounters()
    if not ids:
        return deleted
    ids = list(ids)
    if kind == "test":
        deleted.bump("question", await store.delete_many("questions", {"test_id": ids}, txn=txn))
        deleted.bump("test", await store.delete_many("tests", {"course_id": course_id, "id": ids}, txn=txn))
        return deleted
    collection, parent_field, below = _CASCADE[kind]

    tests = await store.find("tests", {"course_id": course_id, parent_field: ids}, txn=txn)
    if tests:
        removed = await store.delete_many("questions", {"test_id": [t["id"] for t in tests]}, txn=txn)
        deleted.bump("question", removed)
    for child in below:
        removed = await store.delete_many(child, {"course_id": course_id, parent_field: ids}, txn=txn)
        deleted.bump(child[:-1], removed)
    removed = await store.delete_many(collection, {"course_id": course_id, "id": ids}, txn=txn)
    deleted.bump(kind, removed)
    return deleted


def partition(tasks: Sequence[CopyTask], batch_size: int) -> List[List[CopyTask]]:
    """Split tasks into fixed-size batches, keeping their order."""
    size = max(1, int(batch_size))
    return [list(tasks[i:i + size]) for i in range(0, len(tasks), size)]


class BatchExecutor:
    """
    Applies copy tasks in fixed-size batches.

    Each batch is one transaction and each task runs in a savepoint of it:
    a failing task rolls back only its own writes and is reported in
    ``errors`` while the rest of the batch commits. A storage failure
    (including a commit conflict) discards the whole batch, which is then
    retried with exponential backoff; once retries run out the batch is
    reported and the executor moves on to the next one.
    """

    def __init__(
        self,
        store: DocumentStore,
        backoff_base_seconds: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.store = store
        self.backoff_base_seconds = (
            settings.copy_backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )
        self._sleep = sleep or asyncio.sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): base * 3^(attempt-1)."""
        return self.backoff_base_seconds * (3 ** (attempt - 1))

    async def _run_with_retries(
        self,
        label: str,
        retries: int,
        work: Callable[[Transaction], Awaitable[Any]],
    ) -> Tuple[Any, Optional[Exception], int]:
        attempt = 0
        while True:
            attempt += 1
            txn = self.store.start_transaction()
            try:
                value = await work(txn)
                await txn.commit()
                return value, None, attempt
            except StorageError as exc:
                await txn.abort()
                if attempt > retries:
                    logger.error(f"{label} failed after {attempt} attempt(s): {exc}")
                    return None, exc, attempt
                delay = self.backoff_delay(attempt)
                logger.warning(f"{label} attempt {attempt} failed ({exc}); retrying in {delay:.2f}s")
                await self._sleep(delay)

    async def _apply(self, target_course_id: str, task: CopyTask, txn: Transaction, partial: ExecutionResult) -> None:
        try:
            with txn.savepoint():
                outcome = await apply_task(self.store, target_course_id, task, txn)
        except Exception as exc:
            if ErrorRecovery.is_retryable(exc):
                raise
            error_type = ErrorRecovery.classify_error(exc)
            ErrorRecovery.log_error_recovery(
                task.key, error_type, ErrorRecovery.get_recovery_strategy(error_type), str(exc)
            )
            partial.errors.append(ErrorRecovery.task_error(task.key, exc))
            return

        if outcome.created:
            partial.copied.bump(task.type)
        else:
            partial.skipped += 1
            if outcome.updated:
                partial.updated.bump(task.type)

    async def execute_batches(
        self,
        target_course_id: str,
        tasks: Sequence[CopyTask],
        plan: CopyPlan,
        mode: str = "MERGE",
        include_tests: bool = True,
    ) -> ExecutionResult:
        """
        Apply ``tasks`` to the target course batch by batch.

        In OVERWRITE mode a cleanup pass afterwards removes target subjects,
        chapters and topics whose slug does not appear among the tasks.
        """
        result = ExecutionResult()
        batches = partition(tasks, plan.batch_size)
        result.batches.total = len(batches)

        for index, batch in enumerate(batches, start=1):

            async def work(txn: Transaction, batch=batch) -> ExecutionResult:
                partial = ExecutionResult()
                for task in batch:
                    await self._apply(target_course_id, task, txn, partial)
                return partial

            partial, error, attempts = await self._run_with_retries(
                f"Batch {index}/{len(batches)} for course {target_course_id}", plan.retries, work
            )
            if error is not None:
                result.errors.append(ErrorRecovery.batch_error(index, attempts, error))
                continue
            result.absorb(partial)
            result.batches.processed += 1
            logger.info(
                f"Batch {index}/{len(batches)} committed for course {target_course_id}: "
                f"{partial.copied.total()} created, {partial.skipped} existing, {len(partial.errors)} error(s)"
            )

        if mode == "OVERWRITE":
            deleted, error, attempts = await self._run_with_retries(
                f"Prune for course {target_course_id}",
                plan.retries,
                lambda txn: self.prune_absent(target_course_id, tasks, txn, include_tests),
            )
            if error is not None:
                result.errors.append(ErrorRecovery.task_error(f"{target_course_id}:prune", error))
            else:
                result.deleted.absorb(deleted)
                logger.info(f"Pruned {deleted.total()} row(s) absent from source in course {target_course_id}")

        return result

    async def prune_absent(
        self,
        target_course_id: str,
        tasks: Sequence[CopyTask],
        txn: Transaction,
        include_tests: bool = False,
    ) -> KindCounters:
        """
        Delete target subjects, chapters and topics whose slug is absent from
        the task-derived source slug sets, level by level. When tests are part
        of the copy, tests missing from the source are pruned under surviving
        topics as well.
        """
        subject_slugs: Set[str] = set()
        chapter_slugs: Dict[str, Set[str]] = defaultdict(set)
        topic_slugs: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        test_slugs: Dict[Tuple[str, str, str], Set[str]] = defaultdict(set)
        for task in tasks:
            data = task.data
            if task.type == "subject":
                subject_slugs.add(data["slug"])
            elif task.type == "chapter":
                chapter_slugs[data["subject_slug"]].add(data["slug"])
            elif task.type == "topic":
                topic_slugs[(data["subject_slug"], data["chapter_slug"])].add(data["slug"])
            elif task.type == "test":
                test_slugs[(data["subject_slug"], data["chapter_slug"], data["topic_slug"])].add(data["slug"])

        deleted = KindCounters()
        subjects = await self.store.find("subjects", {"course_id": target_course_id}, txn=txn)
        doomed = [s["id"] for s in subjects if slugify(s.get("name")) not in subject_slugs]
        deleted.absorb(await delete_cascade(self.store, target_course_id, "subject", doomed, txn))

        for subject in subjects:
            if subject["id"] in doomed:
                continue
            s_slug = slugify(subject.get("name"))
            chapters = await self.store.find(
                "chapters", {"course_id": target_course_id, "subject_id": subject["id"]}, txn=txn
            )
            doomed_chapters = [c["id"] for c in chapters if slugify(c.get("name")) not in chapter_slugs[s_slug]]
            deleted.absorb(await delete_cascade(self.store, target_course_id, "chapter", doomed_chapters, txn))

            for chapter in chapters:
                if chapter["id"] in doomed_chapters:
                    continue
                c_slug = slugify(chapter.get("name"))
                topics = await self.store.find(
                    "topics",
                    {"course_id": target_course_id, "subject_id": subject["id"], "chapter_id": chapter["id"]},
                    txn=txn,
                )
                doomed_topics = [
                    t["id"] for t in topics if slugify(t.get("name")) not in topic_slugs[(s_slug, c_slug)]
                ]
                deleted.absorb(await delete_cascade(self.store, target_course_id, "topic", doomed_topics, txn))

                if not include_tests:
                    continue
                for topic in topics:
                    if topic["id"] in doomed_topics:
                        continue
                    wanted = test_slugs[(s_slug, c_slug, slugify(topic.get("name")))]
                    tests = await self.store.find(
                        "tests", {"course_id": target_course_id, "topic_id": topic["id"]}, txn=txn
                    )
                    doomed_tests = [x["id"] for x in tests if slugify(x.get("title")) not in wanted]
                    deleted.absorb(await delete_cascade(self.store, target_course_id, "test", doomed_tests, txn))

        return deleted
