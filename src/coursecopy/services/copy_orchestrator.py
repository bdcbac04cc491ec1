"""Copy-structure orchestration: plan, execute, verify, roll back."""

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from ..config import settings
from ..models.schemas import (
    CanonicalSummary,
    CopiedSummary,
    CopyDryRunResponse,
    CopyPlan,
    CopyRunResponse,
    CopyStructureRequest,
    PlanSummary,
    VerifySummary,
)
from .batch_executor import BatchExecutor
from .canonical import compute_canonical
from .snapshot import restore_snapshot, snapshot_target
from .storage import DocumentStore
from .task_builder import build_copy_tasks
from .verifier import Verifier

logger = logging.getLogger(__name__)

COPY_MODES = ("MERGE", "OVERWRITE")


class CopyValidationError(Exception):
    """Invalid copy request; rejected before anything is mutated."""
    pass


class CourseNotFoundError(Exception):
    """Source or target course does not exist."""
    pass


class CopyState(Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    ROLLING_BACK = "rolling_back"
    DONE = "done"
    DONE_INCOMPLETE = "done_incomplete"


class CopyOrchestrator:
    """Runs copy-structure requests against one document store."""

    def __init__(
        self,
        store: DocumentStore,
        executor: Optional[BatchExecutor] = None,
        verify_max_cycles: Optional[int] = None,
    ):
        self.store = store
        self.executor = executor or BatchExecutor(store)
        self.verifier = Verifier(self.executor)
        self.verify_max_cycles = (
            settings.copy_verify_max_cycles if verify_max_cycles is None else verify_max_cycles
        )
        self._target_locks: Dict[str, asyncio.Lock] = {}
        self._target_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _single_flight(self, target_course_id: str):
        """Serialize runs per target course; the lock is dropped once nobody holds or awaits it."""
        lock = self._target_locks.get(target_course_id)
        if lock is None:
            lock = self._target_locks[target_course_id] = asyncio.Lock()
        self._target_users[target_course_id] = self._target_users.get(target_course_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._target_users[target_course_id] -= 1
            if not self._target_users[target_course_id]:
                del self._target_users[target_course_id]
                del self._target_locks[target_course_id]

    def _transition(self, state: CopyState, source_id: str, target_id: str) -> CopyState:
        logger.info(f"copy-structure {source_id} -> {target_id}: {state.value}")
        return state

    async def validate(self, request: CopyStructureRequest) -> Tuple[str, str, str, CopyPlan]:
        """
        Check ids, mode and course existence; clamp the plan.

        Returns:
            (source_course_id, target_course_id, mode, plan)
        """
        for value in (request.source_course_id, request.target_course_id):
            if value is not None and not isinstance(value, str):
                raise CopyValidationError("sourceCourseId and targetCourseId must be strings")
        source_id = (request.source_course_id or "").strip()
        target_id = (request.target_course_id or "").strip()
        if not source_id or not target_id:
            raise CopyValidationError("sourceCourseId and targetCourseId are required")
        if source_id == target_id:
            raise CopyValidationError("Source and target cannot be same")

        mode = "MERGE" if request.mode in (None, "") else request.mode
        if isinstance(mode, str):
            mode = mode.strip().upper()
        if mode not in COPY_MODES:
            raise CopyValidationError(f"Invalid mode '{request.mode}'; expected MERGE or OVERWRITE")

        if await self.store.get("courses", source_id) is None or await self.store.get("courses", target_id) is None:
            raise CourseNotFoundError("Course not found")

        requested = request.plan
        batch_size = requested.batch_size if requested and requested.batch_size is not None else settings.copy_batch_size
        retries = requested.retries if requested and requested.retries is not None else settings.copy_retries
        plan = CopyPlan(
            batch_size=settings.clamp_batch_size(batch_size),
            retries=settings.clamp_retries(retries),
        )
        return source_id, target_id, mode, plan

    async def copy_structure(self, request: CopyStructureRequest) -> Union[CopyDryRunResponse, CopyRunResponse]:
        """
        PLANNING -> (dry run: return) -> EXECUTING -> VERIFYING
        -> DONE | ROLLING_BACK (OVERWRITE) | DONE_INCOMPLETE (MERGE).
        """
        source_id, target_id, mode, plan = await self.validate(request)
        include_tests = request.include_sectional_tests

        if request.dry_run:
            return await self._plan(source_id, target_id, mode, plan, include_tests)

        async with self._single_flight(target_id):
            return await self._run(source_id, target_id, mode, plan, include_tests)

    async def _plan(
        self, source_id: str, target_id: str, mode: str, plan: CopyPlan, include_tests: bool
    ) -> CopyDryRunResponse:
        self._transition(CopyState.PLANNING, source_id, target_id)
        source = await compute_canonical(self.store, source_id, include_tests)
        target = await compute_canonical(self.store, target_id, include_tests)
        tasks = await build_copy_tasks(self.store, source_id, include_tests)
        return CopyDryRunResponse(
            source=CanonicalSummary(counts=source.counts, hash=source.hash),
            target=CanonicalSummary(counts=target.counts, hash=target.hash),
            plan=PlanSummary(
                total_items=len(tasks),
                total_batches=math.ceil(len(tasks) / plan.batch_size) if tasks else 0,
                batch_size=plan.batch_size,
                retries=plan.retries,
            ),
            mode=mode,
        )

    async def _run(
        self, source_id: str, target_id: str, mode: str, plan: CopyPlan, include_tests: bool
    ) -> CopyRunResponse:
        self._transition(CopyState.PLANNING, source_id, target_id)
        tasks = await build_copy_tasks(self.store, source_id, include_tests)
        snapshot = await snapshot_target(self.store, target_id) if mode == "OVERWRITE" else None

        self._transition(CopyState.EXECUTING, source_id, target_id)
        execution = await self.executor.execute_batches(target_id, tasks, plan, mode, include_tests)

        self._transition(CopyState.VERIFYING, source_id, target_id)
        verify = await self.verifier.verify_and_reconcile(
            source_id, target_id, include_tests, self.verify_max_cycles, plan
        )
        # Reconciliation re-applies every task; only what it actually changed is reported.
        execution.copied.absorb(verify.reconcile.copied)
        execution.updated.absorb(verify.reconcile.updated)
        execution.errors.extend(verify.reconcile.errors)

        rolled_back = False
        if verify.matched:
            self._transition(CopyState.DONE, source_id, target_id)
        elif snapshot is not None:
            self._transition(CopyState.ROLLING_BACK, source_id, target_id)
            await restore_snapshot(self.store, target_id, snapshot)
            rolled_back = True
        else:
            self._transition(CopyState.DONE_INCOMPLETE, source_id, target_id)

        return CopyRunResponse(
            success=verify.matched,
            incomplete=(not verify.matched) or bool(execution.errors),
            copied=CopiedSummary.from_counters(execution.copied),
            copied_by_kind=execution.copied,
            updated=execution.updated.total(),
            deleted=execution.deleted,
            skipped=execution.skipped,
            batches=execution.batches,
            verify=VerifySummary(
                matched=verify.matched,
                attempts=verify.attempts,
                source_hash=verify.source.hash,
                target_hash=verify.target.hash,
                source_counts=verify.source.counts,
                target_counts=verify.target.counts,
            ),
            errors=execution.errors,
            rolled_back=rolled_back,
            mode=mode,
        )
