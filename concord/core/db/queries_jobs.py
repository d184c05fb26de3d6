"""
Matching-job and job-lease queries extracted from `concord.core.catalog_db.CatalogDb`.

The job state machine is guarded in SQL as well: every transition is an
`UPDATE ... WHERE status = <expected>` and callers check `rowcount`.

The lease is a single row (`id = 1`). Taking it is a conditional UPDATE that
only succeeds when nobody holds it or the holder's lease has expired, so two
processes sharing the database cannot both run a job.
"""

from __future__ import annotations

from typing import Any

import aiosqlite

from concord.core.db.models import MatchingJobRow
from concord.core.enums import JobStatus, JobType

_JOB_COLUMNS = """
    id, job_type, status, processed_works, total_works, matches_found,
    conflicts_created, failed_items, error_message, cancel_requested, since,
    created_at, started_at, finished_at
"""


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def _row_to_job(row: aiosqlite.Row) -> MatchingJobRow:
    return MatchingJobRow(
        id=int(row["id"]),
        job_type=JobType(row["job_type"]),
        status=JobStatus(row["status"]),
        processed_works=int(row["processed_works"]),
        total_works=int(row["total_works"]),
        matches_found=int(row["matches_found"]),
        conflicts_created=int(row["conflicts_created"]),
        failed_items=int(row["failed_items"]),
        error_message=row["error_message"],
        cancel_requested=bool(row["cancel_requested"]),
        since=_opt_float(row["since"]),
        created_at=float(row["created_at"]),
        started_at=_opt_float(row["started_at"]),
        finished_at=_opt_float(row["finished_at"]),
    )


async def insert_job(
    conn: aiosqlite.Connection, *, job_type: JobType, since: float | None, now: float
) -> int:
    cursor = await conn.execute(
        "INSERT INTO matching_jobs (job_type, status, since, created_at) VALUES (?, ?, ?, ?);",
        (job_type.value, JobStatus.PENDING.value, since, now),
    )
    return int(cursor.lastrowid)


async def get_job(conn: aiosqlite.Connection, job_id: int) -> MatchingJobRow | None:
    cursor = await conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM matching_jobs WHERE id = ?;",
        (int(job_id),),
    )
    row = await cursor.fetchone()
    return _row_to_job(row) if row is not None else None


async def list_jobs(
    conn: aiosqlite.Connection, *, limit: int, offset: int
) -> list[MatchingJobRow]:
    cursor = await conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM matching_jobs ORDER BY id DESC LIMIT ? OFFSET ?;",
        (int(limit), int(offset)),
    )
    rows = await cursor.fetchall()
    return [_row_to_job(r) for r in rows]


async def count_jobs(conn: aiosqlite.Connection) -> int:
    cursor = await conn.execute("SELECT COUNT(*) AS c FROM matching_jobs;")
    row = await cursor.fetchone()
    return int(row["c"]) if row else 0


async def list_jobs_with_status(
    conn: aiosqlite.Connection, status: JobStatus
) -> list[MatchingJobRow]:
    cursor = await conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM matching_jobs WHERE status = ? ORDER BY id;",
        (status.value,),
    )
    rows = await cursor.fetchall()
    return [_row_to_job(r) for r in rows]


async def get_last_job(conn: aiosqlite.Connection) -> MatchingJobRow | None:
    cursor = await conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM matching_jobs ORDER BY id DESC LIMIT 1;"
    )
    row = await cursor.fetchone()
    return _row_to_job(row) if row is not None else None


async def last_completed_started_at(conn: aiosqlite.Connection) -> float | None:
    """`started_at` of the most recent completed job of either type."""
    cursor = await conn.execute(
        """
        SELECT started_at FROM matching_jobs
        WHERE status = ? AND started_at IS NOT NULL
        ORDER BY started_at DESC
        LIMIT 1;
        """,
        (JobStatus.COMPLETED.value,),
    )
    row = await cursor.fetchone()
    return _opt_float(row["started_at"]) if row is not None else None


async def transition_job(
    conn: aiosqlite.Connection,
    job_id: int,
    *,
    from_status: JobStatus,
    to_status: JobStatus,
    now: float,
    error_message: str | None = None,
) -> bool:
    """
    Move a job between states if it is currently in `from_status`.

    Returns False when the job is missing or was not in `from_status`.
    """
    if not from_status.can_transition_to(to_status):
        raise ValueError(f"illegal job transition {from_status.value} -> {to_status.value}")

    if to_status is JobStatus.RUNNING:
        cursor = await conn.execute(
            "UPDATE matching_jobs SET status = ?, started_at = ? WHERE id = ? AND status = ?;",
            (to_status.value, now, int(job_id), from_status.value),
        )
    else:
        cursor = await conn.execute(
            """
            UPDATE matching_jobs
            SET status = ?, finished_at = ?, error_message = COALESCE(?, error_message)
            WHERE id = ? AND status = ?;
            """,
            (to_status.value, now, error_message, int(job_id), from_status.value),
        )
    return cursor.rowcount > 0


async def update_progress(
    conn: aiosqlite.Connection,
    job_id: int,
    *,
    processed_works: int,
    total_works: int,
    matches_found: int,
    conflicts_created: int,
    failed_items: int,
) -> bool:
    """Write counters of a running job. Counters never move backwards."""
    cursor = await conn.execute(
        """
        UPDATE matching_jobs
        SET processed_works   = MAX(processed_works, ?),
            total_works       = MAX(total_works, ?),
            matches_found     = MAX(matches_found, ?),
            conflicts_created = MAX(conflicts_created, ?),
            failed_items      = MAX(failed_items, ?)
        WHERE id = ? AND status = ?;
        """,
        (
            int(processed_works),
            int(total_works),
            int(matches_found),
            int(conflicts_created),
            int(failed_items),
            int(job_id),
            JobStatus.RUNNING.value,
        ),
    )
    return cursor.rowcount > 0


async def request_cancel(conn: aiosqlite.Connection, job_id: int) -> bool:
    cursor = await conn.execute(
        "UPDATE matching_jobs SET cancel_requested = 1 WHERE id = ? AND status = ?;",
        (int(job_id), JobStatus.RUNNING.value),
    )
    return cursor.rowcount > 0


async def is_cancel_requested(conn: aiosqlite.Connection, job_id: int) -> bool:
    cursor = await conn.execute(
        "SELECT cancel_requested FROM matching_jobs WHERE id = ?;", (int(job_id),)
    )
    row = await cursor.fetchone()
    return bool(row["cancel_requested"]) if row is not None else False


# ---------------------------------------------------------------------------
# Lease
# ---------------------------------------------------------------------------


async def get_lease(conn: aiosqlite.Connection) -> dict[str, Any] | None:
    cursor = await conn.execute("SELECT owner, job_id, expires_at FROM job_lease WHERE id = 1;")
    row = await cursor.fetchone()
    if row is None or row["owner"] is None:
        return None
    return {
        "owner": row["owner"],
        "job_id": row["job_id"],
        "expires_at": _opt_float(row["expires_at"]),
    }


async def acquire_lease(
    conn: aiosqlite.Connection, *, owner: str, now: float, ttl: float
) -> bool:
    """Take the lease if it is free or expired. Returns True on success."""
    cursor = await conn.execute(
        """
        UPDATE job_lease
        SET owner = ?, job_id = NULL, expires_at = ?
        WHERE id = 1 AND (owner IS NULL OR expires_at IS NULL OR expires_at < ?);
        """,
        (owner, now + ttl, now),
    )
    return cursor.rowcount > 0


async def renew_lease(
    conn: aiosqlite.Connection,
    *,
    owner: str,
    job_id: int | None,
    now: float,
    ttl: float,
) -> bool:
    """Extend the lease held by `owner`. Returns False if it was lost."""
    cursor = await conn.execute(
        "UPDATE job_lease SET job_id = ?, expires_at = ? WHERE id = 1 AND owner = ?;",
        (job_id, now + ttl, owner),
    )
    return cursor.rowcount > 0


async def release_lease(conn: aiosqlite.Connection, *, owner: str) -> bool:
    cursor = await conn.execute(
        """
        UPDATE job_lease SET owner = NULL, job_id = NULL, expires_at = NULL
        WHERE id = 1 AND owner = ?;
        """,
        (owner,),
    )
    return cursor.rowcount > 0
