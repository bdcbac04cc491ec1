"""Post-copy verification with idempotent reconciliation passes."""

import logging
from typing import Optional

from ..models.schemas import CopyPlan, ExecutionResult, VerifyResult
from .batch_executor import BatchExecutor
from .canonical import canonical_paths, compute_canonical
from .task_builder import build_copy_tasks

logger = logging.getLogger(__name__)


class Verifier:
    """
    Compares source and target slug path sets and closes gaps by re-running
    a full MERGE copy. Coarse by intent: every reconciliation pass re-applies
    the whole task list and relies on the upserts being idempotent.
    """

    def __init__(self, executor: BatchExecutor):
        self.executor = executor
        self.store = executor.store

    async def verify_and_reconcile(
        self,
        source_course_id: str,
        target_course_id: str,
        include_tests: bool,
        max_cycles: int,
        plan: Optional[CopyPlan] = None,
    ) -> VerifyResult:
        """
        Verify up to ``max_cycles`` times, reconciling between checks.

        Returns as soon as every source path exists in the target. With
        ``max_cycles`` of 0 the snapshots are still computed but the result is
        reported as not matched.
        """
        plan = plan or CopyPlan()
        reconcile = ExecutionResult()
        source = await compute_canonical(self.store, source_course_id, include_tests)
        target = await compute_canonical(self.store, target_course_id, include_tests)
        missing = sorted(canonical_paths(source.canonical) - canonical_paths(target.canonical))

        attempts = 0
        while attempts < max_cycles:
            attempts += 1
            if not missing:
                logger.info(
                    f"Course {target_course_id} matches {source_course_id} after {attempts} verification(s)"
                )
                return VerifyResult(
                    matched=True,
                    attempts=attempts,
                    source=source,
                    target=target,
                    reconcile=reconcile,
                )
            if attempts == max_cycles:
                break

            logger.warning(
                f"Course {target_course_id} is missing {len(missing)} path(s) from {source_course_id}; "
                f"reconciling (cycle {attempts}/{max_cycles})"
            )
            tasks = await build_copy_tasks(self.store, source_course_id, include_tests)
            reconcile.absorb(
                await self.executor.execute_batches(target_course_id, tasks, plan, "MERGE", include_tests)
            )
            source = await compute_canonical(self.store, source_course_id, include_tests)
            target = await compute_canonical(self.store, target_course_id, include_tests)
            missing = sorted(canonical_paths(source.canonical) - canonical_paths(target.canonical))

        logger.warning(
            f"Course {target_course_id} did not converge after {attempts} verification(s); "
            f"{len(missing)} path(s) still missing"
        )
        return VerifyResult(
            matched=False,
            attempts=attempts,
            source=source,
            target=target,
            missing=missing,
            reconcile=reconcile,
        )
