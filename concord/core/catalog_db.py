"""
Catalog database schema + access layer.

Goals:
- SQLite + aiosqlite, async/await friendly.
- Keep schema small, but leave room to evolve (via user_version migrations).

This module is intentionally independent of the web layer.

Note:
- Models/DTOs live in `concord.core.db.models`
- Schema/migrations live in `concord.core.db.schema`
- Query functions live in `concord.core.db.queries_*` modules
- `CatalogDb` remains the public facade used by the rest of the codebase
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

import aiosqlite

from concord.core.db import queries_conflicts, queries_groups, queries_jobs, queries_works
from concord.core.db.models import (
    ConflictRow,
    GroupMemberRow,
    MatchGroupRow,
    MatchingJobRow,
    UpsertWork,
    WorkRecord,
    normalize_text,
)
from concord.core.db.schema import ensure_schema as ensure_schema_sql
from concord.core.enums import ConflictType, JobStatus, JobType, Severity


class CatalogDb:
    """
    Async access layer for the catalog DB.

    Usage:
        db = CatalogDb("concord.db")
        await db.open()
        await db.ensure_schema()
        ... queries ...
        await db.close()

    Notes:
    - This class is designed to be injected into other components.
    - Connections are not pooled; we keep a single connection.
    - Write helpers do not commit; callers decide transaction boundaries.
    - Implements the `CatalogReader` protocol (`list_works`, `count_works`,
      `get_works`) consumed by the matching job.
    """

    def __init__(self, db_path: str | Path, *, page_size: int = 200) -> None:
        self._db_path = str(db_path)
        self._conn: aiosqlite.Connection | None = None
        self.page_size = page_size

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        if self._conn is not None:
            return
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA foreign_keys = ON;")
        await self._conn.execute("PRAGMA journal_mode = WAL;")
        await self._conn.execute("PRAGMA synchronous = NORMAL;")
        await self._conn.execute("PRAGMA temp_store = MEMORY;")

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("CatalogDb is not open. Call await db.open() first.")
        return self._conn

    async def ensure_schema(self) -> None:
        """Create or migrate schema to current version."""
        await ensure_schema_sql(self._require_conn())

    async def execute(self, sql: str, params: Sequence[Any] | Mapping[str, Any] = ()) -> None:
        await self._require_conn().execute(sql, params)

    async def commit(self) -> None:
        await self._require_conn().commit()

    # ===========================================================================
    # Works: upsert (stays here)
    # ===========================================================================

    async def upsert_work(self, work: UpsertWork) -> WorkRecord:
        """Insert or update a work by its id. Returns the stored record."""
        conn = self._require_conn()

        work_id = normalize_text(work.work_id)
        account_id = normalize_text(work.account_id)
        title = normalize_text(work.title)
        if not work_id or not account_id or not title:
            raise ValueError("work_id, account_id and title are required")
        updated_at = work.updated_at if work.updated_at is not None else time.time()

        await conn.execute(
            """
            INSERT INTO works(
                work_id, account_id, title, iswc, rights_chain,
                valid, validation_errors, updated_at
            ) VALUES (
                :work_id, :account_id, :title, :iswc, :rights_chain,
                :valid, :validation_errors, :updated_at
            )
            ON CONFLICT(work_id) DO UPDATE SET
                account_id        = excluded.account_id,
                title             = excluded.title,
                iswc              = excluded.iswc,
                rights_chain      = excluded.rights_chain,
                valid             = excluded.valid,
                validation_errors = excluded.validation_errors,
                updated_at        = excluded.updated_at
            """,
            {
                "work_id": work_id,
                "account_id": account_id,
                "title": title,
                "iswc": normalize_text(work.iswc),
                "rights_chain": json.dumps(list(work.rights_chain)),
                "valid": 1 if work.valid else 0,
                "validation_errors": json.dumps(list(work.validation_errors)),
                "updated_at": float(updated_at),
            },
        )

        record = await queries_works.get_work(conn, work_id)
        if record is None:
            raise RuntimeError("Upsert failed: work row not found after insert/update.")
        return record

    async def upsert_works(self, works: Iterable[UpsertWork]) -> int:
        """Bulk upsert works. Returns count of upserted works."""
        conn = self._require_conn()
        await conn.execute("SAVEPOINT upsert_works_sp;")
        try:
            count = 0
            for work in works:
                await self.upsert_work(work)
                count += 1
            await conn.execute("RELEASE SAVEPOINT upsert_works_sp;")
            return count
        except Exception:
            await conn.execute("ROLLBACK TO SAVEPOINT upsert_works_sp;")
            raise

    # ===========================================================================
    # Works: catalog reader
    # ===========================================================================

    async def get_work(self, work_id: str) -> WorkRecord | None:
        return await queries_works.get_work(self._require_conn(), work_id)

    async def get_works(self, work_ids: Iterable[str]) -> list[WorkRecord]:
        return await queries_works.get_works(self._require_conn(), work_ids)

    async def count_works(self, since: float | None = None) -> int:
        return await queries_works.count_works(self._require_conn(), since=since)

    async def list_works(self, since: float | None = None) -> AsyncIterator[list[WorkRecord]]:
        """Yield pages of works (ordered by id) updated at or after `since`."""
        after: str | None = None
        while True:
            page = await queries_works.list_works_page(
                self._require_conn(), since=since, after_work_id=after, limit=self.page_size
            )
            if not page:
                return
            yield page
            if len(page) < self.page_size:
                return
            after = page[-1].work_id

    async def delete_work(self, work_id: str) -> bool:
        return await queries_works.delete_work(self._require_conn(), work_id)

    # ===========================================================================
    # Match keys / groups (delegated)
    # ===========================================================================

    async def get_work_keys(self, work_id: str) -> list[str]:
        return await queries_works.get_work_keys(self._require_conn(), work_id)

    async def replace_work_keys(self, work_id: str, match_keys: Sequence[str]) -> list[str]:
        return await queries_works.replace_work_keys(self._require_conn(), work_id, match_keys)

    async def list_key_members(self, match_key: str) -> list[str]:
        return await queries_works.list_key_members(self._require_conn(), match_key)

    async def prune_orphan_keys(self) -> list[str]:
        return await queries_works.prune_orphan_keys(self._require_conn())

    async def get_group(self, group_id: int) -> MatchGroupRow | None:
        return await queries_groups.get_group(self._require_conn(), group_id)

    async def get_group_by_key(self, match_key: str) -> MatchGroupRow | None:
        return await queries_groups.get_group_by_key(self._require_conn(), match_key)

    async def upsert_group(
        self,
        *,
        match_key: str,
        canonical_title: str,
        canonical_iswc: str | None,
        member_count: int,
        total_claimed_ownership: float,
        job_id: int | None,
    ) -> int:
        return await queries_groups.upsert_group(
            self._require_conn(),
            match_key=match_key,
            canonical_title=canonical_title,
            canonical_iswc=canonical_iswc,
            member_count=member_count,
            total_claimed_ownership=total_claimed_ownership,
            job_id=job_id,
            now=time.time(),
        )

    async def replace_group_members(
        self, group_id: int, members: Sequence[tuple[str, str, float]]
    ) -> None:
        await queries_groups.replace_group_members(self._require_conn(), group_id, members)

    async def list_group_members(self, group_id: int) -> list[GroupMemberRow]:
        return await queries_groups.list_group_members(self._require_conn(), group_id)

    async def reset_group(self, match_key: str, *, job_id: int | None) -> bool:
        return await queries_groups.reset_group(
            self._require_conn(), match_key, job_id=job_id, now=time.time()
        )

    async def reset_stale_groups(self, *, job_id: int) -> int:
        return await queries_groups.reset_stale_groups(
            self._require_conn(), job_id=job_id, now=time.time()
        )

    async def count_groups(self) -> int:
        return await queries_groups.count_groups(self._require_conn())

    # ===========================================================================
    # Conflicts (delegated)
    # ===========================================================================

    async def get_conflict(self, conflict_id: int) -> ConflictRow | None:
        return await queries_conflicts.get_conflict(self._require_conn(), conflict_id)

    async def get_open_conflict(
        self, match_group_id: int, conflict_type: ConflictType
    ) -> ConflictRow | None:
        return await queries_conflicts.get_open_conflict(
            self._require_conn(), match_group_id, conflict_type
        )

    async def insert_conflict(self, **fields: Any) -> int:
        return await queries_conflicts.insert_conflict(
            self._require_conn(), now=time.time(), **fields
        )

    async def update_open_conflict(self, conflict_id: int, **fields: Any) -> bool:
        return await queries_conflicts.update_open_conflict(
            self._require_conn(), conflict_id, now=time.time(), **fields
        )

    async def resolve_conflict(self, conflict_id: int, *, notes: str | None) -> bool:
        return await queries_conflicts.resolve_conflict(
            self._require_conn(), conflict_id, notes=notes, now=time.time()
        )

    async def list_conflicts(
        self,
        *,
        resolved: bool | None = None,
        conflict_type: ConflictType | None = None,
        severity: Severity | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ConflictRow]:
        return await queries_conflicts.list_conflicts(
            self._require_conn(),
            resolved=resolved,
            conflict_type=conflict_type,
            severity=severity,
            limit=limit,
            offset=offset,
        )

    async def count_conflicts(
        self,
        *,
        resolved: bool | None = None,
        conflict_type: ConflictType | None = None,
        severity: Severity | None = None,
    ) -> int:
        return await queries_conflicts.count_conflicts(
            self._require_conn(),
            resolved=resolved,
            conflict_type=conflict_type,
            severity=severity,
        )

    async def count_unresolved_by_severity(self) -> dict[str, int]:
        return await queries_conflicts.count_unresolved_by_severity(self._require_conn())

    # ===========================================================================
    # Jobs + lease (delegated)
    # ===========================================================================

    async def insert_job(self, job_type: JobType, *, since: float | None) -> int:
        return await queries_jobs.insert_job(
            self._require_conn(), job_type=job_type, since=since, now=time.time()
        )

    async def get_job(self, job_id: int) -> MatchingJobRow | None:
        return await queries_jobs.get_job(self._require_conn(), job_id)

    async def list_jobs(self, *, limit: int = 50, offset: int = 0) -> list[MatchingJobRow]:
        return await queries_jobs.list_jobs(self._require_conn(), limit=limit, offset=offset)

    async def count_jobs(self) -> int:
        return await queries_jobs.count_jobs(self._require_conn())

    async def list_jobs_with_status(self, status: JobStatus) -> list[MatchingJobRow]:
        return await queries_jobs.list_jobs_with_status(self._require_conn(), status)

    async def get_last_job(self) -> MatchingJobRow | None:
        return await queries_jobs.get_last_job(self._require_conn())

    async def last_completed_started_at(self) -> float | None:
        return await queries_jobs.last_completed_started_at(self._require_conn())

    async def transition_job(
        self,
        job_id: int,
        *,
        from_status: JobStatus,
        to_status: JobStatus,
        error_message: str | None = None,
    ) -> bool:
        return await queries_jobs.transition_job(
            self._require_conn(),
            job_id,
            from_status=from_status,
            to_status=to_status,
            now=time.time(),
            error_message=error_message,
        )

    async def update_job_progress(self, job_id: int, **counters: int) -> bool:
        return await queries_jobs.update_progress(self._require_conn(), job_id, **counters)

    async def request_job_cancel(self, job_id: int) -> bool:
        return await queries_jobs.request_cancel(self._require_conn(), job_id)

    async def is_job_cancel_requested(self, job_id: int) -> bool:
        return await queries_jobs.is_cancel_requested(self._require_conn(), job_id)

    async def get_lease(self) -> dict[str, Any] | None:
        return await queries_jobs.get_lease(self._require_conn())

    async def acquire_lease(self, owner: str, *, ttl: float) -> bool:
        return await queries_jobs.acquire_lease(
            self._require_conn(), owner=owner, now=time.time(), ttl=ttl
        )

    async def renew_lease(self, owner: str, *, job_id: int | None, ttl: float) -> bool:
        return await queries_jobs.renew_lease(
            self._require_conn(), owner=owner, job_id=job_id, now=time.time(), ttl=ttl
        )

    async def release_lease(self, owner: str) -> bool:
        return await queries_jobs.release_lease(self._require_conn(), owner=owner)
