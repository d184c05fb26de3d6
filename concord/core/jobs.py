"""
Matching job orchestration.

A matching job walks the catalog, asks the candidate matcher which match keys
every work belongs to, rebuilds the affected match groups and runs the conflict
detector on each of them. Two flavours:

- full_scan:    every work; groups nobody evaluated are emptied afterwards
- incremental:  only works updated since the last completed job started; only
                groups that contained (or now contain) one of them are touched

A group whose works all belong to another group that is at least as large is
left empty, so one pair of works is never judged twice through two keys.

Jobs run as asyncio tasks. At most one job runs at a time: starting one takes a
single-row lease in the database (`job_lease`), which is renewed on every
progress flush and released when the job ends. Cancellation is cooperative and
checked between items; whatever was written before stays written.

State machine:

    pending -> running -> completed | failed | cancelled
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from collections.abc import Sequence
from dataclasses import asdict, dataclass

from concord.config import PolicyConfig, get_policy_config
from concord.core import CoreError, NotFoundError
from concord.core.catalog import CandidateMatcher, CatalogReader, KeyMatcher
from concord.core.catalog_db import CatalogDb
from concord.core.conflicts import ConflictQueue
from concord.core.db.models import MatchingJobRow
from concord.core.detector import ConflictDetector
from concord.core.enums import JobStatus, JobType
from concord.core.events import EventBus, JobEvent, event_bus
from concord.core.matching import MatchGroup
from concord.core.rights import StructuralChainError

logger = logging.getLogger(__name__)


class JobError(CoreError):
    """Base class for matching job errors."""


class JobAlreadyRunningError(JobError):
    """Another matching job holds the lease."""


class JobStateError(JobError):
    """The requested operation does not fit the job's current state."""


class _JobCancelled(Exception):
    pass


@dataclass(slots=True)
class JobProgress:
    processed_works: int = 0
    total_works: int = 0
    matches_found: int = 0
    conflicts_created: int = 0
    failed_items: int = 0


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class MatchingJobRunner:
    """
    Starts, tracks and cancels matching jobs.

    Usage:
        runner = MatchingJobRunner(db)
        job = await runner.start_job(JobType.FULL_SCAN)
        job = await runner.wait(job.id)
    """

    def __init__(
        self,
        db: CatalogDb,
        *,
        catalog: CatalogReader | None = None,
        matcher: CandidateMatcher | None = None,
        detector: ConflictDetector | None = None,
        conflicts: ConflictQueue | None = None,
        config: PolicyConfig | None = None,
        bus: EventBus | None = None,
        owner: str | None = None,
    ) -> None:
        self._db = db
        self._catalog: CatalogReader = catalog or db
        self._matcher: CandidateMatcher = matcher or KeyMatcher()
        self._config = config
        self._detector = detector or ConflictDetector(config)
        self._bus = bus or event_bus
        self._conflicts = conflicts or ConflictQueue(db, bus=self._bus)
        self.owner = owner or _default_owner()

        self._lock = asyncio.Lock()
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._cancel_flags: set[int] = set()

    @property
    def config(self) -> PolicyConfig:
        return self._config or get_policy_config()

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    # -------------------------------------------------------------------------
    # Control surface
    # -------------------------------------------------------------------------

    async def start_job(self, job_type: JobType | str) -> MatchingJobRow:
        """
        Start a job in the background.

        Raises:
            ValueError: unknown job type.
            JobAlreadyRunningError: a job is already running (here or in another
                process sharing the database). The running job is not touched.
        """
        job_type = JobType(job_type)
        ttl = self.config.lease_ttl_seconds

        async with self._lock:
            if self._tasks:
                running = next(iter(self._tasks))
                raise JobAlreadyRunningError(f"Matching job {running} is already running")

            acquired = await self._db.acquire_lease(self.owner, ttl=ttl)
            await self._db.commit()
            if not acquired:
                lease = await self._db.get_lease()
                holder = lease["job_id"] if lease else None
                raise JobAlreadyRunningError(
                    f"Matching job {holder} is already running"
                    if holder is not None
                    else "Another worker holds the job lease"
                )

            try:
                await self._fail_orphaned_jobs()
                since = None
                if job_type is JobType.INCREMENTAL:
                    since = await self._db.last_completed_started_at()
                job_id = await self._db.insert_job(job_type, since=since)
                await self._db.renew_lease(self.owner, job_id=job_id, ttl=ttl)
                await self._db.transition_job(
                    job_id, from_status=JobStatus.PENDING, to_status=JobStatus.RUNNING
                )
                await self._db.commit()
            except Exception:
                await self._db.release_lease(self.owner)
                await self._db.commit()
                raise

            job = await self._db.get_job(job_id)
            if job is None:
                raise RuntimeError(f"Matching job {job_id} vanished after insert")

            task = asyncio.create_task(self._run(job), name=f"matching-job-{job_id}")
            self._tasks[job_id] = task
            task.add_done_callback(lambda _t, jid=job_id: self._tasks.pop(jid, None))

        logger.info(
            "Started %s job %d%s",
            job_type.value,
            job.id,
            f" (works updated since {job.since:.0f})" if job.since is not None else "",
        )
        await self._publish("started", job, JobProgress())
        return job

    async def cancel_job(self, job_id: int) -> MatchingJobRow:
        """
        Ask a running job to stop after the item it is working on.

        Raises:
            NotFoundError: no such job.
            JobStateError: the job is not running.
        """
        job = await self._db.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Matching job {job_id} not found")
        if job.status is not JobStatus.RUNNING:
            raise JobStateError(f"Matching job {job_id} is {job.status.value}, not running")

        self._cancel_flags.add(job_id)
        await self._db.request_job_cancel(job_id)
        await self._db.commit()
        logger.info("Cancellation requested for job %d", job_id)
        return await self._db.get_job(job_id) or job

    async def get_job(self, job_id: int) -> MatchingJobRow:
        job = await self._db.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Matching job {job_id} not found")
        return job

    async def list_jobs(
        self, *, offset: int = 0, limit: int = 50
    ) -> tuple[list[MatchingJobRow], int]:
        if offset < 0:
            raise ValueError("offset must be >= 0")
        if limit <= 0:
            raise ValueError("limit must be > 0")
        jobs = await self._db.list_jobs(limit=limit, offset=offset)
        return jobs, await self._db.count_jobs()

    async def running_job(self) -> MatchingJobRow | None:
        running = await self._db.list_jobs_with_status(JobStatus.RUNNING)
        return running[-1] if running else None

    async def wait(self, job_id: int, timeout: float | None = None) -> MatchingJobRow:
        """Wait for an in-process job to finish and return its final record."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return await self.get_job(job_id)

    async def run_job(self, job_type: JobType | str) -> MatchingJobRow:
        """Start a job and wait for it to finish."""
        job = await self.start_job(job_type)
        return await self.wait(job.id)

    async def recover_stale_jobs(self) -> int:
        """
        Fail jobs left `running` by a worker that is gone.

        Called on startup. Does nothing while another live worker holds an
        unexpired lease. Returns the number of jobs marked failed.
        """
        lease = await self._db.get_lease()
        if lease is not None and lease["owner"] != self.owner:
            expires_at = lease["expires_at"]
            if expires_at is not None and expires_at >= time.time():
                logger.info("Job lease held by %s; not touching running jobs", lease["owner"])
                return 0
            await self._db.release_lease(lease["owner"])

        recovered = await self._fail_orphaned_jobs()
        await self._db.commit()
        return recovered

    async def shutdown(self) -> None:
        """Cancel in-process jobs and wait for them to record their final state."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _run(self, job: MatchingJobRow) -> None:
        progress = JobProgress()
        try:
            await self._execute(job, progress)
        except _JobCancelled:
            await self._finish(job, JobStatus.CANCELLED, progress)
        except asyncio.CancelledError:
            await self._finish(job, JobStatus.CANCELLED, progress)
            raise
        except Exception as e:
            logger.exception("Matching job %d failed", job.id)
            await self._finish(job, JobStatus.FAILED, progress, f"{type(e).__name__}: {e}")
        else:
            await self._finish(job, JobStatus.COMPLETED, progress)

    async def _execute(self, job: MatchingJobRow, progress: JobProgress) -> None:
        batch_size = self.config.progress_batch_size
        since = job.since if job.job_type is JobType.INCREMENTAL else None

        progress.total_works = await self._catalog.count_works(since)
        await self._flush(job, progress)

        # Phase 1: refresh match keys of every work in scope.
        affected: set[str] = set()
        pending = 0
        async for page in self._catalog.list_works(since):
            for record in page:
                self._check_cancel(job.id)
                try:
                    summary = record.to_summary()
                    keys = sorted(set(await self._matcher.find_candidate_matches(summary)))
                    previous = await self._db.replace_work_keys(record.work_id, keys)
                except Exception as e:  # noqa: BLE001 - per-work robustness
                    logger.warning("Skipping work %s: %s", record.work_id, e)
                    progress.failed_items += 1
                    continue

                affected.update(previous)
                affected.update(keys)
                progress.processed_works += 1
                pending += 1
                if pending >= batch_size:
                    await self._flush(job, progress)
                    pending = 0

        if job.job_type is JobType.FULL_SCAN:
            affected.update(await self._db.prune_orphan_keys())
        await self._flush(job, progress)
        pending = 0

        # Phase 2: rebuild and classify the affected groups in key order.
        for match_key in sorted(affected):
            self._check_cancel(job.id)
            try:
                await self._evaluate_group(job, match_key, progress)
            except Exception as e:  # noqa: BLE001 - per-group robustness
                logger.warning("Skipping match group %s: %s", match_key, e)
                progress.failed_items += 1
                continue
            pending += 1
            if pending >= batch_size:
                await self._flush(job, progress)
                pending = 0

        if job.job_type is JobType.FULL_SCAN:
            emptied = await self._db.reset_stale_groups(job_id=job.id)
            if emptied:
                logger.info("Full scan %d emptied %d stale match groups", job.id, emptied)

    async def _evaluate_group(
        self, job: MatchingJobRow, match_key: str, progress: JobProgress
    ) -> None:
        work_ids = await self._db.list_key_members(match_key)
        covering = await self._covering_key(match_key, work_ids)
        if covering is not None:
            logger.debug("Match group %s is covered by %s", match_key, covering)
            await self._db.reset_group(match_key, job_id=job.id)
            return
        records = await self._catalog.get_works(work_ids)

        members = []
        for record in records:
            try:
                members.append(record.to_summary())
            except StructuralChainError as e:
                logger.warning("Leaving work %s out of group %s: %s", record.work_id, match_key, e)

        if len(members) < 2:
            await self._db.reset_group(match_key, job_id=job.id)
            return

        group = MatchGroup.from_members(match_key, members)
        worst = self._detector.worst_ownership(group.members)
        group = group.with_total(worst.total if worst is not None else 0.0)

        group_id = await self._db.upsert_group(
            match_key=group.match_key,
            canonical_title=group.canonical_title,
            canonical_iswc=group.canonical_iswc,
            member_count=group.member_count,
            total_claimed_ownership=group.total_claimed_ownership,
            job_id=job.id,
        )
        await self._db.replace_group_members(
            group_id,
            [
                (
                    m.work_id,
                    m.account_id,
                    m.claimed_ownership(worst.territory, worst.share_type) if worst else 0.0,
                )
                for m in group.members
            ],
        )
        progress.matches_found += 1

        for candidate in self._detector.detect(group):
            _, created = await self._conflicts.record_candidate(group_id, candidate, job.id)
            if created:
                progress.conflicts_created += 1

    async def _covering_key(self, match_key: str, work_ids: Sequence[str]) -> str | None:
        """
        Return another key shared by every work of `match_key` whose group is
        larger, or equally large with a smaller key. Such a group already
        judges every pair of these works, so `match_key` would only repeat it.
        """
        if len(work_ids) < 2:
            return None
        shared = set(await self._db.get_work_keys(work_ids[0]))
        for work_id in work_ids[1:]:
            shared &= set(await self._db.get_work_keys(work_id))
        shared.discard(match_key)

        size = len(work_ids)
        for other in sorted(shared):
            other_size = len(await self._db.list_key_members(other))
            if other_size > size or (other_size == size and other < match_key):
                return other
        return None

    def _check_cancel(self, job_id: int) -> None:
        if job_id in self._cancel_flags:
            raise _JobCancelled()

    async def _flush(self, job: MatchingJobRow, progress: JobProgress) -> None:
        """Persist counters, renew the lease and pick up cancel requests."""
        await self._db.update_job_progress(job.id, **asdict(progress))
        renewed = await self._db.renew_lease(
            self.owner, job_id=job.id, ttl=self.config.lease_ttl_seconds
        )
        if await self._db.is_job_cancel_requested(job.id):
            self._cancel_flags.add(job.id)
        await self._db.commit()
        if not renewed:
            raise JobError("Lost the job lease to another worker")
        await self._publish("progress", job, progress)

    async def _finish(
        self,
        job: MatchingJobRow,
        status: JobStatus,
        progress: JobProgress,
        error_message: str | None = None,
    ) -> None:
        try:
            await self._db.update_job_progress(job.id, **asdict(progress))
            await self._db.transition_job(
                job.id,
                from_status=JobStatus.RUNNING,
                to_status=status,
                error_message=error_message,
            )
            await self._db.release_lease(self.owner)
            await self._db.commit()
        finally:
            self._cancel_flags.discard(job.id)

        logger.info(
            "Job %d %s: %d/%d works, %d groups, %d new conflicts, %d failed items",
            job.id,
            status.value,
            progress.processed_works,
            progress.total_works,
            progress.matches_found,
            progress.conflicts_created,
            progress.failed_items,
        )
        await self._publish(status.value, job, progress, error_message or "")

    async def _fail_orphaned_jobs(self) -> int:
        """Mark `running` jobs without a live in-process task as failed. Does not commit."""
        failed = 0
        for job in await self._db.list_jobs_with_status(JobStatus.RUNNING):
            if job.id in self._tasks:
                continue
            if await self._db.transition_job(
                job.id,
                from_status=JobStatus.RUNNING,
                to_status=JobStatus.FAILED,
                error_message="worker lease expired",
            ):
                logger.warning("Marked orphaned job %d as failed", job.id)
                failed += 1
        return failed

    async def _publish(
        self,
        action: str,
        job: MatchingJobRow,
        progress: JobProgress,
        error: str = "",
    ) -> None:
        status = action if action in {s.value for s in JobStatus} else JobStatus.RUNNING.value
        await self._bus.publish(
            JobEvent(
                action=action,
                job_id=job.id,
                job_type=job.job_type.value,
                status=status,
                error=error,
                **asdict(progress),
            )
        )
