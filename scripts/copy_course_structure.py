#!/usr/bin/env python3
"""Copy one course's structure into another against a local data directory."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Optional, Sequence

from coursecopy.config import settings
from coursecopy.models.schemas import CopyPlanRequest, CopyStructureRequest
from coursecopy.services.copy_orchestrator import CopyOrchestrator
from coursecopy.services.storage import DocumentStore


async def run_copy(data_dir: Path, request: CopyStructureRequest) -> dict:
    store = DocumentStore(str(data_dir), lock_timeout=settings.store_lock_timeout_seconds)
    result = await CopyOrchestrator(store).copy_structure(request)
    return result.model_dump(by_alias=True, mode="json")


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Copy subjects, chapters, topics and sectional tests from one course into another"
    )
    parser.add_argument("--source", required=True, help="Source course id")
    parser.add_argument("--target", required=True, help="Target course id")
    parser.add_argument(
        "--data-dir",
        default=settings.data_path,
        type=Path,
        help="Document store directory (defaults to DATA_DIR)",
    )
    parser.add_argument("--mode", default="MERGE", choices=["MERGE", "OVERWRITE", "merge", "overwrite"])
    parser.add_argument("--no-tests", action="store_true", help="Skip sectional tests and their questions")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--retries", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true", help="Print the plan only without writing")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    request = CopyStructureRequest(
        source_course_id=args.source,
        target_course_id=args.target,
        mode=args.mode,
        include_sectional_tests=not args.no_tests,
        plan=CopyPlanRequest(batch_size=args.batch_size, retries=args.retries),
        dry_run=args.dry_run,
    )
    result = asyncio.run(run_copy(args.data_dir.resolve(), request))
    print(json.dumps(result, indent=2, ensure_ascii=False))
    if args.dry_run:
        return 0
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
