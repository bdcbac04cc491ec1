"""FastAPI application for copying course structures between courses."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .models.schemas import (
    Course,
    CopyStructureRequest,
    LockApplyRequest,
    ScheduleEntryRequest,
    SetActiveSubjectRequest,
)
from .services.batch_schedule import (
    BatchScheduleService,
    ScheduleError,
    ScheduleNotFoundError,
    SubjectLockedError,
)
from .services.canonical import compute_canonical, load_tree
from .services.copy_orchestrator import CopyOrchestrator, CopyValidationError, CourseNotFoundError
from .services.lock_states import LockActionError, LockStateService
from .services.storage import DocumentStore, StorageError

# Configure logging
_log_fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=_log_fmt)

# Optionally mirror all logs to a file (LOG_FILE env var).
_log_file = settings.log_file.strip()
if _log_file:
    try:
        Path(_log_file).parent.mkdir(parents=True, exist_ok=True)
        _fh = logging.FileHandler(_log_file, encoding="utf-8")
        _fh.setFormatter(logging.Formatter(_log_fmt))
        _fh.setLevel(logging.DEBUG)
        logging.getLogger().addHandler(_fh)
    except OSError as _log_err:
        print(f"[coursecopy] WARNING: could not open log file {_log_file!r}: {_log_err}", flush=True)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Course Structure Copy Service",
    description="Copies subject/chapter/topic/test trees between courses and manages batch unlocks",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_store: Optional[DocumentStore] = None
_orchestrator: Optional[CopyOrchestrator] = None


def _get_store() -> DocumentStore:
    global _store
    if _store is None:
        _store = DocumentStore(str(settings.data_path), lock_timeout=settings.store_lock_timeout_seconds)
    return _store


def _get_orchestrator() -> CopyOrchestrator:
    """One orchestrator per store, so the per-target copy locks are shared."""
    global _orchestrator
    store = _get_store()
    if _orchestrator is None or _orchestrator.store is not store:
        _orchestrator = CopyOrchestrator(store)
    return _orchestrator


def _truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes"}


# ==========================================
# COPY STRUCTURE
# ==========================================

@app.post("/api/courses/copy-structure")
async def copy_structure(
    request: Optional[CopyStructureRequest] = None,
    dry_run: Optional[str] = Query(None, alias="dryRun"),
) -> Dict[str, Any]:
    """Dry-run or run a structure copy from one course into another."""
    try:
        request = request or CopyStructureRequest()
        if _truthy(dry_run):
            request = request.model_copy(update={"dry_run": True})
        result = await _get_orchestrator().copy_structure(request)
        return result.model_dump(by_alias=True, mode="json")
    except CopyValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CourseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Copy structure failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/courses/{course_id}/structure")
async def get_course_structure(course_id: str) -> Dict[str, Any]:
    """Subjects, chapters and topics of a course as a nested tree."""
    try:
        store = _get_store()
        course = await store.get("courses", course_id)
        if course is None:
            raise HTTPException(status_code=404, detail="Course not found")
        tree = await load_tree(store, course_id, include_tests=False)
        return {
            "success": True,
            "course": Course.model_validate(course).model_dump(),
            "structure": [node.model_dump(mode="json") for node in tree],
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to load structure for course {course_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/courses/{course_id}/canonical")
async def get_course_canonical(
    course_id: str,
    include_tests: bool = Query(True, alias="includeTests"),
) -> Dict[str, Any]:
    try:
        store = _get_store()
        if await store.get("courses", course_id) is None:
            raise HTTPException(status_code=404, detail="Course not found")
        result = await compute_canonical(store, course_id, include_tests)
        return {"success": True, **result.model_dump(mode="json")}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to compute canonical for course {course_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ==========================================
# BATCH SCHEDULE
# ==========================================

def _schedule_http_error(e: ScheduleError) -> HTTPException:
    if isinstance(e, ScheduleNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SubjectLockedError):
        return HTTPException(status_code=403, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@app.get("/api/courses/{course_id}/batches/{batch_id}/view")
async def get_batch_course_view(course_id: str, batch_id: str) -> Dict[str, Any]:
    """Course subjects with their open/locked status for one batch."""
    try:
        view = await BatchScheduleService(_get_store()).course_view(course_id, batch_id)
        return view.model_dump(by_alias=True, mode="json")
    except ScheduleError as e:
        raise _schedule_http_error(e)
    except Exception as e:
        logger.error(f"Failed to build batch view {course_id}/{batch_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.patch("/api/batches/{batch_id}/active-subject")
async def set_active_subject(batch_id: str, request: SetActiveSubjectRequest) -> Dict[str, Any]:
    try:
        batch = await BatchScheduleService(_get_store()).set_active_subject(batch_id, request.subject_id)
        return {"success": True, "batch": batch.model_dump(by_alias=True, mode="json")}
    except ScheduleError as e:
        raise _schedule_http_error(e)
    except Exception as e:
        logger.error(f"Failed to set active subject on batch {batch_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/batches/{batch_id}/schedule", status_code=201)
async def upsert_schedule_entry(batch_id: str, request: ScheduleEntryRequest) -> Dict[str, Any]:
    try:
        schedule = await BatchScheduleService(_get_store()).upsert_schedule_entry(
            batch_id, request.subject_id, request.open_at
        )
        return {
            "success": True,
            "schedule": [entry.model_dump(by_alias=True, mode="json") for entry in schedule],
        }
    except ScheduleError as e:
        raise _schedule_http_error(e)
    except Exception as e:
        logger.error(f"Failed to update schedule of batch {batch_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/courses/{course_id}/batches/{batch_id}/subjects/{subject_id}/lessons")
async def get_subject_lessons(course_id: str, batch_id: str, subject_id: str) -> Dict[str, Any]:
    """Chapters and topics of a subject, only while it is the batch's active subject."""
    try:
        store = _get_store()
        await BatchScheduleService(store).ensure_subject_unlocked(batch_id, subject_id)
        subject = await store.get("subjects", subject_id)
        if subject is None or subject.get("course_id") != course_id:
            raise HTTPException(status_code=404, detail="Subject not found")

        chapters = await store.find(
            "chapters", {"course_id": course_id, "subject_id": subject_id}, sort=["order", "name"]
        )
        lessons = []
        for chapter in chapters:
            topics = await store.find(
                "topics",
                {"course_id": course_id, "subject_id": subject_id, "chapter_id": chapter["id"]},
                sort=["order", "name"],
            )
            lessons.append({
                "id": chapter["id"],
                "name": chapter.get("name", ""),
                "order": chapter.get("order", 0),
                "topics": [
                    {"id": topic["id"], "name": topic.get("name", ""), "order": topic.get("order", 0)}
                    for topic in topics
                ],
            })
        return {"success": True, "subjectId": subject_id, "chapters": lessons}
    except ScheduleError as e:
        raise _schedule_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to load lessons for subject {subject_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ==========================================
# LOCK STATES
# ==========================================

@app.get("/api/locks/state")
async def get_lock_states(
    course_id: Optional[str] = Query(None, alias="courseId"),
    batch_id: Optional[str] = Query(None, alias="batchId"),
) -> Dict[str, Any]:
    try:
        states = await LockStateService(_get_store()).list_states(course_id, batch_id)
        return {"success": True, "states": [s.model_dump(by_alias=True, mode="json") for s in states]}
    except LockActionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to list lock states: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/locks/apply")
async def apply_locks(request: LockApplyRequest) -> Dict[str, Any]:
    try:
        result = await LockStateService(_get_store()).apply(request)
        return result.model_dump(by_alias=True, mode="json", exclude_none=True)
    except LockActionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.error(f"Lock apply failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.error(f"Lock apply failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data_dir": str(settings.data_path),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info",
    )
