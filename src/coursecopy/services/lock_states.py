"""Per-batch lock states for subjects, sections (chapters) and topics."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..models.schemas import LockAction, LockApplyRequest, LockApplyResult, LockStateView
from .storage import DocumentStore, Transaction

logger = logging.getLogger(__name__)

LOCK_SCOPES = ("subject", "section", "topic")
LOCK_OPS = ("setActive", "lock", "unlock")


class LockActionError(Exception):
    """Malformed lock request; nothing is written."""
    pass


class LockStateService:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def list_states(self, course_id: Optional[str], batch_id: Optional[str]) -> List[LockStateView]:
        if not course_id or not batch_id:
            raise LockActionError("courseId and batchId required")
        docs = await self.store.find(
            "lock_states", {"course_id": course_id, "batch_id": batch_id}, sort=["scope", "item_id"]
        )
        return [LockStateView.model_validate(doc) for doc in docs]

    @staticmethod
    def validate(request: LockApplyRequest) -> Tuple[str, str, List[LockAction]]:
        if not request.course_id or not request.batch_id:
            raise LockActionError("courseId and batchId required")
        if not request.actions:
            raise LockActionError("actions array required")
        for action in request.actions:
            if action is None or not action.scope or not action.target_id or not action.op:
                raise LockActionError("Invalid action entry")
            if action.scope not in LOCK_SCOPES:
                raise LockActionError("Invalid scope")
            if action.op not in LOCK_OPS:
                raise LockActionError("Invalid op")
        return request.course_id, request.batch_id, list(request.actions)

    async def sibling_ids(self, course_id: str, scope: str, target_id: str, txn: Transaction) -> List[str]:
        """Ids sharing the target's parent, the target included."""
        if scope == "subject":
            docs = await self.store.find("subjects", {"course_id": course_id}, txn=txn)
        elif scope == "section":
            chapter = await self.store.get("chapters", target_id, txn=txn)
            if chapter is None:
                return []
            docs = await self.store.find(
                "chapters", {"course_id": course_id, "subject_id": chapter.get("subject_id")}, txn=txn
            )
        else:
            topic = await self.store.get("topics", target_id, txn=txn)
            if topic is None:
                return []
            docs = await self.store.find(
                "topics",
                {"course_id": course_id, "subject_id": topic.get("subject_id"), "chapter_id": topic.get("chapter_id")},
                txn=txn,
            )
        return [doc["id"] for doc in docs]

    async def _set_state(
        self,
        txn: Transaction,
        key: Dict[str, Any],
        status: str,
        unlock_at: Optional[datetime],
        idempotency_key: Optional[str],
    ) -> None:
        fields = {
            "status": status,
            "unlock_at": unlock_at.isoformat() if unlock_at else None,
            "idempotency_key": idempotency_key,
        }
        existing = await self.store.find_one("lock_states", key, txn=txn)
        if existing is None:
            await self.store.insert("lock_states", {**key, **fields}, txn=txn)
        else:
            await self.store.update("lock_states", existing["id"], fields, txn=txn)

    async def apply(self, request: LockApplyRequest) -> LockApplyResult:
        """
        Apply every action in one transaction.

        ``setActive`` marks the target active and, with ``autoLockSiblings``,
        locks every other item under the same parent. A dry run only
        validates and reports zero counters.
        """
        course_id, batch_id, actions = self.validate(request)
        result = LockApplyResult()
        if request.dry_run:
            result.dry_run = True
            return result

        async with self.store.transaction() as txn:
            for action in actions:
                unlock_at = action.schedule.unlock_at if action.schedule else None
                key = {"course_id": course_id, "batch_id": batch_id, "scope": action.scope}

                if action.op == "setActive":
                    await self._set_state(
                        txn, {**key, "item_id": action.target_id}, "active", unlock_at, request.idempotency_key
                    )
                    result.active_updated += 1
                    result.changed += 1
                    if not action.auto_lock_siblings:
                        continue
                    for sibling_id in await self.sibling_ids(course_id, action.scope, action.target_id, txn):
                        if sibling_id == action.target_id:
                            continue
                        await self._set_state(
                            txn, {**key, "item_id": sibling_id}, "locked", None, request.idempotency_key
                        )
                        result.locked += 1
                        result.changed += 1
                else:
                    status = "locked" if action.op == "lock" else "unlocked"
                    await self._set_state(
                        txn, {**key, "item_id": action.target_id}, status, unlock_at, request.idempotency_key
                    )
                    if status == "locked":
                        result.locked += 1
                    else:
                        result.unlocked += 1
                    result.changed += 1

        logger.info(
            f"Lock apply for course {course_id} batch {batch_id}: {result.changed} changed "
            f"({result.locked} locked, {result.unlocked} unlocked, {result.active_updated} active)"
        )
        return result
