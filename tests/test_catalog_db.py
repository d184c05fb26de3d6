"""
Tests for the catalog database layer.

These tests verify:
- Schema creation and versioning
- Work upsert / paging
- Match keys and groups
- Job state transitions and the job lease
"""

from __future__ import annotations

import pytest

from concord.core.catalog_db import CatalogDb
from concord.core.db import SCHEMA_VERSION
from concord.core.db.models import UpsertWork
from concord.core.enums import JobStatus, JobType
from concord.core.rights import StructuralChainError, StructuralErrorKind


def make_work(work_id: str, *, account_id: str = "acct-1", updated_at: float = 1000.0, **kw) -> UpsertWork:
    chain = kw.pop(
        "rights_chain",
        [
            {
                "territory": "World",
                "children": [
                    {
                        "composerId": "c1",
                        "category": "Composer",
                        "controlled": True,
                        "mechanicalOwnership": 100,
                        "performanceOwnership": 100,
                    }
                ],
            }
        ],
    )
    return UpsertWork(
        work_id=work_id,
        account_id=account_id,
        title=kw.pop("title", f"Title {work_id}"),
        iswc=kw.pop("iswc", None),
        rights_chain=chain,
        updated_at=updated_at,
        **kw,
    )


class TestSchema:
    async def test_user_version(self, db: CatalogDb) -> None:
        conn = db._require_conn()
        cursor = await conn.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        assert int(row[0]) == SCHEMA_VERSION

    async def test_ensure_schema_is_idempotent(self, db: CatalogDb) -> None:
        await db.ensure_schema()
        await db.ensure_schema()
        assert await db.count_works() == 0

    async def test_lease_row_seeded(self, db: CatalogDb) -> None:
        assert await db.get_lease() is None
        assert await db.acquire_lease("me", ttl=60)

    async def test_not_open(self) -> None:
        db = CatalogDb(":memory:")
        assert not db.is_open
        with pytest.raises(RuntimeError):
            await db.count_works()


class TestWorks:
    async def test_upsert_and_get(self, db: CatalogDb) -> None:
        record = await db.upsert_work(make_work("w1", iswc=" T-000.000.001-0 ", valid=True))

        assert record.work_id == "w1"
        assert record.iswc == "T-000.000.001-0"
        assert record.valid is True
        assert record.updated_at == 1000.0
        assert record.chain().territories == ["World"]
        assert await db.get_work("w1") == record

    async def test_upsert_updates_in_place(self, db: CatalogDb) -> None:
        await db.upsert_work(make_work("w1", title="Old"))
        await db.upsert_work(make_work("w1", title="New", updated_at=2000.0))

        record = await db.get_work("w1")
        assert record is not None
        assert record.title == "New"
        assert record.updated_at == 2000.0
        assert await db.count_works() == 1

    async def test_required_fields(self, db: CatalogDb) -> None:
        with pytest.raises(ValueError):
            await db.upsert_work(make_work("w1", account_id="  "))

    async def test_validation_errors_round_trip(self, db: CatalogDb) -> None:
        record = await db.upsert_work(
            make_work("w1", validation_errors=("World: mechanical_ownership totals 90%",))
        )
        assert record.validation_errors == ("World: mechanical_ownership totals 90%",)
        assert record.to_dict()["validation_errors"] == ["World: mechanical_ownership totals 90%"]

    async def test_list_works_pages_in_id_order(self, db: CatalogDb) -> None:
        """Pages follow work id order and respect the page size."""
        await db.upsert_works(make_work(f"w{i}") for i in (5, 1, 4, 2, 3, 6, 7))

        pages = [page async for page in db.list_works()]

        assert [len(p) for p in pages] == [3, 3, 1]
        assert [w.work_id for p in pages for w in p] == [f"w{i}" for i in range(1, 8)]

    async def test_list_works_since(self, db: CatalogDb) -> None:
        await db.upsert_work(make_work("w1", updated_at=100.0))
        await db.upsert_work(make_work("w2", updated_at=200.0))
        await db.upsert_work(make_work("w3", updated_at=300.0))

        ids = [w.work_id async for page in db.list_works(since=200.0) for w in page]

        assert ids == ["w2", "w3"]
        assert await db.count_works(since=200.0) == 2

    async def test_get_works_sorted(self, db: CatalogDb) -> None:
        await db.upsert_works([make_work("b"), make_work("a")])
        assert [w.work_id for w in await db.get_works(["b", "a", "missing"])] == ["a", "b"]

    async def test_malformed_chain_fails_on_use(self, db: CatalogDb) -> None:
        await db.upsert_work(make_work("w1"))
        await db.execute("UPDATE works SET rights_chain = '{oops' WHERE work_id = 'w1';")

        record = await db.get_work("w1")
        assert record is not None
        with pytest.raises(StructuralChainError) as exc:
            record.to_summary()
        assert exc.value.kind is StructuralErrorKind.MALFORMED

    async def test_delete(self, db: CatalogDb) -> None:
        await db.upsert_work(make_work("w1"))
        assert await db.delete_work("w1")
        assert not await db.delete_work("w1")


class TestMatchKeys:
    async def test_replace_returns_previous(self, db: CatalogDb) -> None:
        assert await db.replace_work_keys("w1", ["title:a"]) == []
        assert await db.replace_work_keys("w1", ["iswc:T1"]) == ["title:a"]
        assert await db.get_work_keys("w1") == ["iswc:T1"]

    async def test_key_members(self, db: CatalogDb) -> None:
        await db.replace_work_keys("w2", ["k"])
        await db.replace_work_keys("w1", ["k"])
        assert await db.list_key_members("k") == ["w1", "w2"]

    async def test_prune_orphans(self, db: CatalogDb) -> None:
        await db.upsert_work(make_work("w1"))
        await db.replace_work_keys("w1", ["k1"])
        await db.replace_work_keys("gone", ["k2"])

        assert await db.prune_orphan_keys() == ["k2"]
        assert await db.list_key_members("k2") == []
        assert await db.list_key_members("k1") == ["w1"]


class TestGroups:
    async def test_upsert_group_keeps_id(self, db: CatalogDb) -> None:
        kwargs = {
            "match_key": "iswc:T1",
            "canonical_title": "Blue Moon",
            "canonical_iswc": "T1",
            "member_count": 2,
            "total_claimed_ownership": 150.0,
            "job_id": 1,
        }
        first = await db.upsert_group(**kwargs)
        second = await db.upsert_group(**{**kwargs, "total_claimed_ownership": 90.0})

        assert first == second
        group = await db.get_group(first)
        assert group is not None
        assert group.total_claimed_ownership == 90.0
        assert await db.count_groups() == 1

    async def test_members_joined_with_works(self, db: CatalogDb) -> None:
        await db.upsert_work(make_work("w1", title="Blue Moon", iswc="T1"))
        group_id = await db.upsert_group(
            match_key="k",
            canonical_title="Blue Moon",
            canonical_iswc="T1",
            member_count=2,
            total_claimed_ownership=100.0,
            job_id=None,
        )
        await db.replace_group_members(group_id, [("w2", "acct-2", 40.0), ("w1", "acct-1", 60.0)])

        members = await db.list_group_members(group_id)

        assert [(m.work_id, m.title, m.claimed_ownership) for m in members] == [
            ("w1", "Blue Moon", 60.0),
            ("w2", None, 40.0),
        ]

    async def test_reset_group(self, db: CatalogDb) -> None:
        group_id = await db.upsert_group(
            match_key="k",
            canonical_title="t",
            canonical_iswc=None,
            member_count=2,
            total_claimed_ownership=100.0,
            job_id=None,
        )
        await db.replace_group_members(group_id, [("w1", "a", 50.0), ("w2", "b", 50.0)])

        assert await db.reset_group("k", job_id=7)
        assert not await db.reset_group("missing", job_id=7)

        group = await db.get_group(group_id)
        assert group is not None
        assert group.member_count == 0
        assert group.last_job_id == 7
        assert await db.list_group_members(group_id) == []
        assert await db.count_groups() == 0

    async def test_reset_stale_groups(self, db: CatalogDb) -> None:
        for key, job_id in (("a", 1), ("b", 2)):
            await db.upsert_group(
                match_key=key,
                canonical_title=key,
                canonical_iswc=None,
                member_count=2,
                total_claimed_ownership=0.0,
                job_id=job_id,
            )

        assert await db.reset_stale_groups(job_id=2) == 1
        stale = await db.get_group_by_key("a")
        fresh = await db.get_group_by_key("b")
        assert stale is not None and stale.member_count == 0
        assert fresh is not None and fresh.member_count == 2


class TestJobs:
    async def test_lifecycle(self, db: CatalogDb) -> None:
        job_id = await db.insert_job(JobType.FULL_SCAN, since=None)
        job = await db.get_job(job_id)
        assert job is not None
        assert job.status is JobStatus.PENDING
        assert job.started_at is None

        assert await db.transition_job(job_id, from_status=JobStatus.PENDING, to_status=JobStatus.RUNNING)
        assert await db.update_job_progress(
            job_id,
            processed_works=3,
            total_works=10,
            matches_found=1,
            conflicts_created=1,
            failed_items=0,
        )
        assert await db.transition_job(
            job_id, from_status=JobStatus.RUNNING, to_status=JobStatus.COMPLETED
        )

        job = await db.get_job(job_id)
        assert job is not None
        assert job.status is JobStatus.COMPLETED
        assert job.processed_works == 3
        assert job.progress == 30.0
        assert job.started_at is not None
        assert job.finished_at is not None
        assert await db.last_completed_started_at() == job.started_at

    async def test_transition_guarded_by_current_status(self, db: CatalogDb) -> None:
        job_id = await db.insert_job(JobType.INCREMENTAL, since=5.0)
        assert not await db.transition_job(
            job_id, from_status=JobStatus.RUNNING, to_status=JobStatus.FAILED
        )
        job = await db.get_job(job_id)
        assert job is not None
        assert job.status is JobStatus.PENDING
        assert job.since == 5.0

    async def test_illegal_transition_rejected(self, db: CatalogDb) -> None:
        job_id = await db.insert_job(JobType.FULL_SCAN, since=None)
        with pytest.raises(ValueError):
            await db.transition_job(
                job_id, from_status=JobStatus.COMPLETED, to_status=JobStatus.RUNNING
            )

    async def test_progress_is_monotonic(self, db: CatalogDb) -> None:
        job_id = await db.insert_job(JobType.FULL_SCAN, since=None)
        await db.transition_job(job_id, from_status=JobStatus.PENDING, to_status=JobStatus.RUNNING)
        counters = {"total_works": 10, "matches_found": 0, "conflicts_created": 0, "failed_items": 0}
        await db.update_job_progress(job_id, processed_works=5, **counters)
        await db.update_job_progress(job_id, processed_works=2, **counters)

        job = await db.get_job(job_id)
        assert job is not None
        assert job.processed_works == 5

    async def test_cancel_only_running(self, db: CatalogDb) -> None:
        job_id = await db.insert_job(JobType.FULL_SCAN, since=None)
        assert not await db.request_job_cancel(job_id)
        await db.transition_job(job_id, from_status=JobStatus.PENDING, to_status=JobStatus.RUNNING)
        assert await db.request_job_cancel(job_id)
        assert await db.is_job_cancel_requested(job_id)

    async def test_list_newest_first(self, db: CatalogDb) -> None:
        ids = [await db.insert_job(JobType.FULL_SCAN, since=None) for _ in range(3)]
        jobs = await db.list_jobs(limit=2, offset=0)
        assert [j.id for j in jobs] == ids[::-1][:2]
        assert await db.count_jobs() == 3
        last = await db.get_last_job()
        assert last is not None and last.id == ids[-1]


class TestLease:
    async def test_exclusive(self, db: CatalogDb) -> None:
        assert await db.acquire_lease("one", ttl=60)
        assert not await db.acquire_lease("two", ttl=60)

        lease = await db.get_lease()
        assert lease is not None
        assert lease["owner"] == "one"

    async def test_renew_and_release(self, db: CatalogDb) -> None:
        await db.acquire_lease("one", ttl=60)
        assert await db.renew_lease("one", job_id=4, ttl=60)
        assert not await db.renew_lease("two", job_id=4, ttl=60)
        lease = await db.get_lease()
        assert lease is not None and lease["job_id"] == 4

        assert not await db.release_lease("two")
        assert await db.release_lease("one")
        assert await db.get_lease() is None
        assert await db.acquire_lease("two", ttl=60)

    async def test_expired_lease_can_be_taken(self, db: CatalogDb) -> None:
        await db.execute(
            "UPDATE job_lease SET owner = 'crashed', expires_at = 1.0 WHERE id = 1;"
        )
        assert await db.acquire_lease("me", ttl=60)
        lease = await db.get_lease()
        assert lease is not None and lease["owner"] == "me"
