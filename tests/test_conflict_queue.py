"""
Tests for the conflict queue.

These tests verify:
- One open conflict per (match group, conflict type)
- Idempotent resolution
- Filtering, severity ordering and stats
- Conflict events on the bus
"""

from __future__ import annotations

import pytest

from concord.core import NotFoundError
from concord.core.catalog_db import CatalogDb
from concord.core.conflicts import ConflictQueue
from concord.core.detector import ConflictCandidate
from concord.core.enums import ConflictType, Severity
from concord.core.events import ConflictEvent, Event, EventBus


def candidate(
    conflict_type: ConflictType = ConflictType.OVERCLAIM,
    severity: Severity = Severity.HIGH,
    description: str = "Combined mechanical ownership in World is 150% across 2 account(s), 50% over",
) -> ConflictCandidate:
    return ConflictCandidate(
        conflict_type=conflict_type,
        severity=severity,
        description=description,
        affected_accounts=("a", "b"),
        territory="World",
        total_claimed=150.0,
    )


async def make_group(db: CatalogDb, key: str = "iswc:T1") -> int:
    return await db.upsert_group(
        match_key=key,
        canonical_title="Blue Moon",
        canonical_iswc="T1",
        member_count=2,
        total_claimed_ownership=150.0,
        job_id=None,
    )


@pytest.fixture
def queue(db: CatalogDb, bus: EventBus) -> ConflictQueue:
    return ConflictQueue(db, bus=bus)


@pytest.fixture
async def events(bus: EventBus) -> list[Event]:
    received: list[Event] = []

    async def handler(event: Event) -> None:
        received.append(event)

    await bus.subscribe("conflict.*", handler)
    return received


class TestRecordCandidate:
    async def test_creates_open_conflict(
        self, db: CatalogDb, queue: ConflictQueue, events: list[Event]
    ) -> None:
        group_id = await make_group(db)

        conflict, created = await queue.record_candidate(group_id, candidate(), job_id=None)

        assert created
        assert conflict.match_group_id == group_id
        assert conflict.conflict_type is ConflictType.OVERCLAIM
        assert conflict.severity is Severity.HIGH
        assert conflict.affected_accounts == ("a", "b")
        assert conflict.total_claimed == 150.0
        assert not conflict.resolved
        assert [e.event_type for e in events] == ["conflict.created"]

    async def test_rescan_refreshes_instead_of_duplicating(
        self, db: CatalogDb, queue: ConflictQueue, events: list[Event]
    ) -> None:
        """Recording the same type again updates the open conflict in place."""
        group_id = await make_group(db)
        first, _ = await queue.record_candidate(group_id, candidate())

        again, created = await queue.record_candidate(group_id, candidate())
        worse, created_worse = await queue.record_candidate(
            group_id, candidate(severity=Severity.CRITICAL, description="worse")
        )

        assert not created and not created_worse
        assert again.id == first.id == worse.id
        assert worse.severity is Severity.CRITICAL
        assert worse.description == "worse"
        assert await db.count_conflicts() == 1
        # Unchanged refreshes stay quiet.
        assert [e.event_type for e in events] == ["conflict.created", "conflict.updated"]

    async def test_types_are_independent(self, db: CatalogDb, queue: ConflictQueue) -> None:
        group_id = await make_group(db)
        await queue.record_candidate(group_id, candidate())
        _, created = await queue.record_candidate(
            group_id, candidate(ConflictType.DATA_MISMATCH, Severity.MEDIUM, "titles")
        )
        assert created
        assert await db.count_conflicts(resolved=False) == 2

    async def test_resolved_conflict_reopens_as_new(
        self, db: CatalogDb, queue: ConflictQueue
    ) -> None:
        group_id = await make_group(db)
        first, _ = await queue.record_candidate(group_id, candidate())
        await queue.resolve_conflict(first.id)

        second, created = await queue.record_candidate(group_id, candidate())

        assert created
        assert second.id != first.id
        assert (await queue.get_conflict(first.id)).conflict.resolved


class TestResolve:
    async def test_resolve_with_notes(
        self, db: CatalogDb, queue: ConflictQueue, events: list[Event]
    ) -> None:
        group_id = await make_group(db)
        conflict, _ = await queue.record_candidate(group_id, candidate())

        resolved = await queue.resolve_conflict(conflict.id, "Publisher confirmed 50%")

        assert resolved.resolved
        assert resolved.resolved_at is not None
        assert resolved.resolution_notes == "Publisher confirmed 50%"
        assert events[-1].event_type == "conflict.resolved"
        assert isinstance(events[-1], ConflictEvent)
        assert events[-1].conflict_id == conflict.id

    async def test_resolve_is_idempotent(
        self, db: CatalogDb, queue: ConflictQueue, events: list[Event]
    ) -> None:
        group_id = await make_group(db)
        conflict, _ = await queue.record_candidate(group_id, candidate())

        first = await queue.resolve_conflict(conflict.id, "first")
        second = await queue.resolve_conflict(conflict.id, "second")

        assert second == first
        assert second.resolution_notes == "first"
        assert [e.event_type for e in events].count("conflict.resolved") == 1

    async def test_resolve_missing(self, queue: ConflictQueue) -> None:
        with pytest.raises(NotFoundError):
            await queue.resolve_conflict(999)

    async def test_get_missing(self, queue: ConflictQueue) -> None:
        with pytest.raises(NotFoundError):
            await queue.get_conflict(999)


class TestListing:
    async def test_most_severe_first(self, db: CatalogDb, queue: ConflictQueue) -> None:
        for key, severity in (("k1", Severity.LOW), ("k2", Severity.CRITICAL), ("k3", Severity.MEDIUM)):
            group_id = await make_group(db, key)
            await queue.record_candidate(group_id, candidate(severity=severity))

        items, total = await queue.list_conflicts()

        assert total == 3
        assert [c.severity for c in items] == [Severity.CRITICAL, Severity.MEDIUM, Severity.LOW]

    async def test_filters(self, db: CatalogDb, queue: ConflictQueue) -> None:
        group_id = await make_group(db)
        overclaim, _ = await queue.record_candidate(group_id, candidate())
        await queue.record_candidate(
            group_id, candidate(ConflictType.DATA_MISMATCH, Severity.MEDIUM, "iswc")
        )
        await queue.resolve_conflict(overclaim.id)

        unresolved, count = await queue.list_conflicts(resolved=False)
        assert count == 1
        assert unresolved[0].conflict_type is ConflictType.DATA_MISMATCH

        by_type, _ = await queue.list_conflicts(conflict_type=ConflictType.OVERCLAIM)
        assert [c.id for c in by_type] == [overclaim.id]

        by_severity, count = await queue.list_conflicts(severity=Severity.LOW)
        assert by_severity == [] and count == 0

    async def test_paging(self, db: CatalogDb, queue: ConflictQueue) -> None:
        for i in range(5):
            await queue.record_candidate(await make_group(db, f"k{i}"), candidate())

        page, total = await queue.list_conflicts(offset=2, limit=2)

        assert total == 5
        assert len(page) == 2

    @pytest.mark.parametrize(("offset", "limit"), [(-1, 10), (0, 0), (0, 5000)])
    async def test_bad_paging(self, queue: ConflictQueue, offset: int, limit: int) -> None:
        with pytest.raises(ValueError):
            await queue.list_conflicts(offset=offset, limit=limit)


class TestDetail:
    async def test_includes_group_and_members(self, db: CatalogDb, queue: ConflictQueue) -> None:
        group_id = await make_group(db)
        await db.replace_group_members(group_id, [("w1", "a", 100.0), ("w2", "b", 50.0)])
        conflict, _ = await queue.record_candidate(group_id, candidate())

        detail = await queue.get_conflict(conflict.id)

        assert detail.conflict == conflict
        assert detail.group is not None
        assert detail.group.match_key == "iswc:T1"
        assert [m.work_id for m in detail.members] == ["w1", "w2"]


class TestStats:
    async def test_empty(self, queue: ConflictQueue) -> None:
        stats = await queue.get_stats()
        assert stats == {
            "total_groups": 0,
            "total_conflicts": 0,
            "unresolved_conflicts": 0,
            "unresolved_by_severity": {"low": 0, "medium": 0, "high": 0, "critical": 0},
            "last_job": None,
        }

    async def test_counts(self, db: CatalogDb, queue: ConflictQueue) -> None:
        group_id = await make_group(db)
        first, _ = await queue.record_candidate(group_id, candidate(severity=Severity.CRITICAL))
        await queue.record_candidate(
            group_id, candidate(ConflictType.DATA_MISMATCH, Severity.MEDIUM, "iswc")
        )
        await queue.resolve_conflict(first.id)

        stats = await queue.get_stats()

        assert stats["total_groups"] == 1
        assert stats["total_conflicts"] == 2
        assert stats["unresolved_conflicts"] == 1
        assert stats["unresolved_by_severity"]["medium"] == 1
        assert stats["unresolved_by_severity"]["critical"] == 0
