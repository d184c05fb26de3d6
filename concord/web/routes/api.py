"""
REST API Routes for Concord.

Provides REST endpoints for operator tooling:
- /api/status: Server status
- /api/stats: Conflict queue aggregate stats
- /api/jobs/*: Start, poll and cancel matching jobs
- /api/events: Recent job and conflict events (long-polling)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Request

from concord import __version__
from concord.core import NotFoundError
from concord.core.jobs import JobAlreadyRunningError, JobStateError
from concord.web.helpers import job_to_dict, read_json

if TYPE_CHECKING:
    from concord.core.catalog_db import CatalogDb
    from concord.core.conflicts import ConflictQueue
    from concord.core.jobs import MatchingJobRunner
    from concord.web.activity import ActivityFeed

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])

# References set during route registration
_catalog_db: CatalogDb | None = None
_job_runner: MatchingJobRunner | None = None
_conflict_queue: ConflictQueue | None = None
_activity: ActivityFeed | None = None

# Longest time a poll of /api/events is held open
MAX_POLL_SECONDS = 30.0


def register_api_routes(
    app,
    catalog_db: CatalogDb,
    job_runner: MatchingJobRunner,
    conflict_queue: ConflictQueue,
    activity: ActivityFeed | None = None,
) -> None:
    """
    Register API routes with the FastAPI app.

    Args:
        app: FastAPI application instance
        catalog_db: Open catalog database
        job_runner: MatchingJobRunner for job control
        conflict_queue: ConflictQueue for stats
        activity: Optional feed backing /api/events
    """
    global _catalog_db, _job_runner, _conflict_queue, _activity
    _catalog_db = catalog_db
    _job_runner = job_runner
    _conflict_queue = conflict_queue
    _activity = activity
    app.include_router(router)


def _require_runner() -> MatchingJobRunner:
    if _job_runner is None:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return _job_runner


# =============================================================================
# Server Status
# =============================================================================


@router.get("/api/status")
async def server_status() -> dict[str, Any]:
    """Get server status and basic info."""
    if _catalog_db is None or _job_runner is None:
        raise HTTPException(status_code=503, detail="Server not initialized")

    running = await _job_runner.running_job()
    return {
        "server": "concord",
        "version": __version__,
        "db_open": _catalog_db.is_open,
        "works": await _catalog_db.count_works(),
        "running_job": job_to_dict(running) if running is not None else None,
    }


@router.get("/api/stats")
async def stats() -> dict[str, Any]:
    """Aggregate conflict queue stats (groups, conflicts, last job)."""
    if _conflict_queue is None:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return await _conflict_queue.get_stats()


# =============================================================================
# Matching Jobs
# =============================================================================


@router.post("/api/jobs", status_code=202)
async def start_job(request: Request) -> dict[str, Any]:
    """Start a matching job.

    Request body: {"job_type": "full_scan" | "incremental"}
    """
    runner = _require_runner()

    body = await read_json(request)
    job_type = body.get("job_type") if isinstance(body, dict) else None
    if not job_type:
        raise HTTPException(status_code=400, detail="Missing 'job_type' in request body")

    try:
        job = await runner.start_job(job_type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown job_type {job_type!r}") from None
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None

    return job_to_dict(job)


@router.get("/api/jobs")
async def list_jobs(offset: int = 0, limit: int = 50) -> dict[str, Any]:
    """List matching jobs, newest first."""
    runner = _require_runner()
    try:
        jobs, total = await runner.list_jobs(offset=offset, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    return {
        "count": total,
        "offset": offset,
        "jobs": [job_to_dict(job) for job in jobs],
    }


@router.get("/api/jobs/running")
async def get_running_job() -> dict[str, Any]:
    """The job currently running, if any."""
    runner = _require_runner()
    job = await runner.running_job()
    return {"job": job_to_dict(job) if job is not None else None}


@router.get("/api/jobs/{job_id}")
async def get_job(job_id: int) -> dict[str, Any]:
    runner = _require_runner()
    try:
        job = await runner.get_job(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found") from None
    return job_to_dict(job)


@router.post("/api/jobs/{job_id}/cancel")
async def cancel_job(job_id: int) -> dict[str, Any]:
    """Request cooperative cancellation of a running job."""
    runner = _require_runner()
    try:
        job = await runner.cancel_job(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found") from None
    except JobStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    return job_to_dict(job)


# =============================================================================
# Activity
# =============================================================================


@router.get("/api/events")
async def get_events(since: int = 0, timeout: float = 0.0, limit: int = 100) -> dict[str, Any]:
    """
    Job and conflict events newer than `since`.

    With a positive `timeout` the request waits (up to MAX_POLL_SECONDS) for a
    newer event before answering. Clients pass the returned `last_seq` as the
    next `since`.
    """
    if _activity is None:
        raise HTTPException(status_code=503, detail="Activity feed not available")
    if since < 0 or not 1 <= limit <= 500:
        raise HTTPException(status_code=400, detail="since must be >= 0, limit 1-500")
    if not 0 <= timeout <= MAX_POLL_SECONDS:
        raise HTTPException(
            status_code=400, detail=f"timeout must be between 0 and {MAX_POLL_SECONDS:g}"
        )

    events = await _activity.wait_for_events(since, timeout=timeout, limit=limit)
    last_seq = events[-1]["seq"] if events else max(since, _activity.last_seq)
    return {"events": events, "last_seq": last_seq}
