"""
Conflict queue: the durable store of open and resolved conflicts.

Operators list, inspect and resolve conflicts here. Matching jobs feed it via
`record_candidate`, which keeps at most one open conflict per (match group,
conflict type): a rescan refreshes the open record instead of adding another.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from concord.core import NotFoundError
from concord.core.catalog_db import CatalogDb
from concord.core.db.models import ConflictRow, GroupMemberRow, MatchGroupRow
from concord.core.detector import ConflictCandidate
from concord.core.enums import ConflictType, Severity
from concord.core.events import ConflictEvent, EventBus, event_bus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConflictDetail:
    """A conflict together with its match group and the group's members."""

    conflict: ConflictRow
    group: MatchGroupRow | None
    members: tuple[GroupMemberRow, ...]


class ConflictQueue:
    """Operator-facing access to conflicts."""

    def __init__(self, db: CatalogDb, *, bus: EventBus | None = None) -> None:
        self._db = db
        self._bus = bus or event_bus

    async def record_candidate(
        self,
        group_id: int,
        candidate: ConflictCandidate,
        job_id: int | None = None,
    ) -> tuple[ConflictRow, bool]:
        """
        Open a conflict for `candidate` or refresh the open one of the same type.

        Does not commit; the caller owns the transaction.

        Returns:
            The stored conflict and whether it was newly created.
        """
        fields: dict[str, Any] = {
            "severity": candidate.severity,
            "description": candidate.description,
            "affected_accounts": tuple(candidate.affected_accounts),
            "territory": candidate.territory,
            "total_claimed": candidate.total_claimed,
            "job_id": job_id,
        }

        existing = await self._db.get_open_conflict(group_id, candidate.conflict_type)
        created = False
        if existing is None:
            try:
                conflict_id = await self._db.insert_conflict(
                    match_group_id=group_id, conflict_type=candidate.conflict_type, **fields
                )
                created = True
            except sqlite3.IntegrityError:
                # Another writer opened it in between.
                existing = await self._db.get_open_conflict(group_id, candidate.conflict_type)
                if existing is None:
                    raise
        if existing is not None:
            conflict_id = existing.id
            await self._db.update_open_conflict(conflict_id, **fields)

        conflict = await self._db.get_conflict(conflict_id)
        if conflict is None:
            raise RuntimeError(f"Conflict {conflict_id} vanished after write")

        if created:
            logger.info(
                "Opened %s conflict %d (%s) on group %d",
                conflict.conflict_type.value,
                conflict.id,
                conflict.severity.value,
                group_id,
            )
            await self._publish("created", conflict)
        elif existing is not None and (
            existing.severity is not conflict.severity or existing.description != conflict.description
        ):
            await self._publish("updated", conflict)
        return conflict, created

    async def list_conflicts(
        self,
        *,
        resolved: bool | None = None,
        conflict_type: ConflictType | None = None,
        severity: Severity | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[ConflictRow], int]:
        """Filtered page of conflicts, most severe first, plus the filtered total."""
        self._validate_paging(offset=offset, limit=limit)
        items = await self._db.list_conflicts(
            resolved=resolved,
            conflict_type=conflict_type,
            severity=severity,
            limit=limit,
            offset=offset,
        )
        total = await self._db.count_conflicts(
            resolved=resolved, conflict_type=conflict_type, severity=severity
        )
        return items, total

    async def get_conflict(self, conflict_id: int) -> ConflictDetail:
        conflict = await self._db.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        group = await self._db.get_group(conflict.match_group_id)
        members = await self._db.list_group_members(conflict.match_group_id)
        return ConflictDetail(conflict=conflict, group=group, members=tuple(members))

    async def resolve_conflict(self, conflict_id: int, notes: str | None = None) -> ConflictRow:
        """
        Resolve a conflict.

        Resolving an already resolved conflict is a no-op and returns it unchanged.

        Raises:
            NotFoundError: no conflict with this id.
        """
        changed = await self._db.resolve_conflict(conflict_id, notes=notes)
        if changed:
            await self._db.commit()
        conflict = await self._db.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        if changed:
            logger.info("Resolved conflict %d", conflict_id)
            await self._publish("resolved", conflict)
        return conflict

    async def get_stats(self) -> dict[str, Any]:
        last_job = await self._db.get_last_job()
        return {
            "total_groups": await self._db.count_groups(),
            "total_conflicts": await self._db.count_conflicts(),
            "unresolved_conflicts": await self._db.count_conflicts(resolved=False),
            "unresolved_by_severity": await self._db.count_unresolved_by_severity(),
            "last_job": (
                {
                    "id": last_job.id,
                    "job_type": last_job.job_type.value,
                    "status": last_job.status.value,
                    "processed_works": last_job.processed_works,
                    "total_works": last_job.total_works,
                    "matches_found": last_job.matches_found,
                    "conflicts_created": last_job.conflicts_created,
                    "finished_at": last_job.finished_at,
                }
                if last_job is not None
                else None
            ),
        }

    async def _publish(self, action: str, conflict: ConflictRow) -> None:
        await self._bus.publish(
            ConflictEvent(
                action=action,
                conflict_id=conflict.id,
                match_group_id=conflict.match_group_id,
                conflict_type=conflict.conflict_type.value,
                severity=conflict.severity.value,
                job_id=conflict.job_id,
            )
        )

    @staticmethod
    def _validate_paging(*, offset: int, limit: int) -> None:
        if offset < 0:
            raise ValueError("offset must be >= 0")
        if limit <= 0:
            raise ValueError("limit must be > 0")
        if limit > 1_000:
            raise ValueError("limit is unreasonably large")
