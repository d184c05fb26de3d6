"""
Tests for concord.web (FastAPI routes).

These tests verify:
- Health and status endpoints
- Matching job control (start, poll, cancel, conflict on concurrent start)
- Conflict queue triage endpoints
- Rights chain validation and work registration
- The activity feed of job and conflict events
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from concord.config import PolicyConfig
from concord.core.catalog_db import CatalogDb
from concord.core.conflicts import ConflictQueue
from concord.core.db.models import UpsertWork
from concord.core.events import ConflictEvent, EventBus
from concord.core.jobs import MatchingJobRunner
from concord.core.validator import RightsChainValidator
from concord.web.server import WebServer

# =============================================================================
# Fixtures
# =============================================================================


def composer(composer_id: str, share: float, *, controlled: bool = True) -> dict[str, Any]:
    return {
        "composerId": composer_id,
        "category": "Composer",
        "controlled": controlled,
        "mechanicalOwnership": share,
        "performanceOwnership": share,
        "mechanicalCollection": 0,
        "performanceCollection": 0,
        "children": [],
    }


def publisher(publisher_id: str, collection: float) -> dict[str, Any]:
    return {
        "publisherId": publisher_id,
        "category": "Original Publisher",
        "controlled": True,
        "mechanicalOwnership": 0,
        "performanceOwnership": 0,
        "mechanicalCollection": collection,
        "performanceCollection": collection,
        "children": [],
    }


@pytest.fixture
def conflict_queue(db: CatalogDb, bus: EventBus) -> ConflictQueue:
    return ConflictQueue(db, bus=bus)


@pytest.fixture
def runner(
    db: CatalogDb, policy: PolicyConfig, bus: EventBus, conflict_queue: ConflictQueue
) -> MatchingJobRunner:
    return MatchingJobRunner(
        db, conflicts=conflict_queue, config=policy, bus=bus, owner="web-test"
    )


@pytest.fixture
def web_server(
    db: CatalogDb,
    runner: MatchingJobRunner,
    conflict_queue: ConflictQueue,
    policy: PolicyConfig,
    bus: EventBus,
) -> WebServer:
    return WebServer(
        db, runner, conflict_queue, validator=RightsChainValidator(policy), bus=bus
    )


@pytest.fixture
async def client(web_server: WebServer) -> AsyncClient:
    """Create an async HTTP client for testing."""
    await web_server.activity.start()
    transport = ASGITransport(app=web_server.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await web_server.activity.stop()


@pytest.fixture
async def overclaimed(db: CatalogDb) -> None:
    for work_id, account_id, share in (("w1", "a", 100), ("w2", "b", 50)):
        await db.upsert_work(
            UpsertWork(
                work_id=work_id,
                account_id=account_id,
                title="Blue Moon",
                iswc="T-000.000.001-0",
                rights_chain=[{"territory": "World", "children": [composer(f"c-{account_id}", share)]}],
                updated_at=1000.0,
            )
        )
    await db.commit()


# =============================================================================
# Status
# =============================================================================


class TestStatus:
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "server": "concord"}

    async def test_status(self, client: AsyncClient, overclaimed: None) -> None:
        response = await client.get("/api/status")
        assert response.status_code == 200
        data = response.json()
        assert data["server"] == "concord"
        assert data["db_open"] is True
        assert data["works"] == 2
        assert data["running_job"] is None

    async def test_stats_empty(self, client: AsyncClient) -> None:
        response = await client.get("/api/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["total_conflicts"] == 0
        assert data["last_job"] is None


# =============================================================================
# Jobs
# =============================================================================


class TestJobs:
    async def test_start_and_poll(
        self, client: AsyncClient, runner: MatchingJobRunner, overclaimed: None
    ) -> None:
        response = await client.post("/api/jobs", json={"job_type": "full_scan"})
        assert response.status_code == 202
        job = response.json()
        assert job["job_type"] == "full_scan"
        assert job["status"] == "running"

        await runner.wait(job["id"], timeout=5)

        response = await client.get(f"/api/jobs/{job['id']}")
        assert response.status_code == 200
        final = response.json()
        assert final["status"] == "completed"
        assert final["conflicts_created"] == 1
        assert final["progress"] == 100.0

    async def test_concurrent_start_conflicts(
        self, client: AsyncClient, runner: MatchingJobRunner, overclaimed: None
    ) -> None:
        first = await client.post("/api/jobs", json={"job_type": "incremental"})
        second = await client.post("/api/jobs", json={"job_type": "full_scan"})

        assert first.status_code == 202
        assert second.status_code == 409

        await runner.wait(first.json()["id"], timeout=5)
        jobs = (await client.get("/api/jobs")).json()
        assert jobs["count"] == 1
        assert jobs["jobs"][0]["job_type"] == "incremental"

    @pytest.mark.parametrize("body", [{}, {"job_type": "nightly"}, []])
    async def test_bad_job_type(self, client: AsyncClient, body: Any) -> None:
        response = await client.post("/api/jobs", json=body)
        assert response.status_code == 400

    async def test_missing_body(self, client: AsyncClient) -> None:
        response = await client.post("/api/jobs")
        assert response.status_code == 400

    async def test_unknown_job(self, client: AsyncClient) -> None:
        assert (await client.get("/api/jobs/99")).status_code == 404
        assert (await client.post("/api/jobs/99/cancel")).status_code == 404

    async def test_cancel_finished_job(
        self, client: AsyncClient, runner: MatchingJobRunner, overclaimed: None
    ) -> None:
        job = await runner.run_job("full_scan")
        response = await client.post(f"/api/jobs/{job.id}/cancel")
        assert response.status_code == 409

    async def test_running_job_none(self, client: AsyncClient) -> None:
        response = await client.get("/api/jobs/running")
        assert response.status_code == 200
        assert response.json() == {"job": None}


# =============================================================================
# Conflicts
# =============================================================================


class TestConflicts:
    @pytest.fixture
    async def scanned(self, runner: MatchingJobRunner, overclaimed: None) -> None:
        await runner.run_job("full_scan")

    async def test_list(self, client: AsyncClient, scanned: None) -> None:
        response = await client.get("/api/conflicts", params={"status": "unresolved"})
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        conflict = data["conflicts"][0]
        assert conflict["conflict_type"] == "overclaim"
        assert conflict["severity"] == "high"
        assert conflict["affected_accounts"] == ["a", "b"]
        assert conflict["resolved"] is False

    async def test_filter_by_type(self, client: AsyncClient, scanned: None) -> None:
        response = await client.get("/api/conflicts", params={"type": "data_mismatch"})
        assert response.status_code == 200
        assert response.json()["count"] == 0

    @pytest.mark.parametrize(
        "params",
        [{"status": "open"}, {"type": "dispute"}, {"severity": "urgent"}, {"limit": 0}],
    )
    async def test_bad_filters(self, client: AsyncClient, params: dict[str, Any]) -> None:
        response = await client.get("/api/conflicts", params=params)
        assert response.status_code == 400

    async def test_detail(self, client: AsyncClient, scanned: None) -> None:
        conflict_id = (await client.get("/api/conflicts")).json()["conflicts"][0]["id"]

        response = await client.get(f"/api/conflicts/{conflict_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["match_group"]["match_key"] == "iswc:T0000000010"
        assert [m["work_id"] for m in data["match_group"]["members"]] == ["w1", "w2"]

    async def test_resolve(self, client: AsyncClient, scanned: None) -> None:
        conflict_id = (await client.get("/api/conflicts")).json()["conflicts"][0]["id"]

        response = await client.put(
            f"/api/conflicts/{conflict_id}/resolve",
            json={"resolution_notes": "Account b withdrew its claim"},
        )
        again = await client.put(f"/api/conflicts/{conflict_id}/resolve")

        assert response.status_code == 200
        assert response.json()["resolved"] is True
        assert again.status_code == 200
        assert again.json()["resolution_notes"] == "Account b withdrew its claim"

        stats = (await client.get("/api/stats")).json()
        assert stats["unresolved_conflicts"] == 0
        assert stats["last_job"]["status"] == "completed"

    async def test_missing_conflict(self, client: AsyncClient) -> None:
        assert (await client.get("/api/conflicts/5")).status_code == 404
        assert (await client.put("/api/conflicts/5/resolve")).status_code == 404


# =============================================================================
# Chains and works
# =============================================================================


class TestChains:
    async def test_validate_valid_chain(self, client: AsyncClient) -> None:
        chain = [
            {
                "territory": "World",
                "children": [composer("c1", 60), composer("c2", 40), publisher("p1", 100)],
            }
        ]
        response = await client.post("/api/chains/validate", json=chain)

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["violations"] == []
        assert data["chain"][0]["totalMechanicalOwnership"] == 100

    async def test_validate_reports_violations(self, client: AsyncClient) -> None:
        chain = {"chain": [{"territory": "US", "children": [composer("c1", 90), publisher("p1", 100)]}]}
        response = await client.post("/api/chains/validate", json=chain)

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is False
        assert {v["share_type"] for v in data["violations"]} == {
            "mechanical_ownership",
            "performance_ownership",
        }

    async def test_structural_error_is_422(self, client: AsyncClient) -> None:
        chain = [{"territory": "US", "children": []}, {"territory": "US", "children": []}]
        response = await client.post("/api/chains/validate", json=chain)

        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "duplicate_territory"

    async def test_validate_rejects_non_list(self, client: AsyncClient) -> None:
        response = await client.post("/api/chains/validate", json={"chain": "nope"})
        assert response.status_code == 400

    async def test_put_and_get_work(self, client: AsyncClient, db: CatalogDb) -> None:
        body = {
            "account_id": "acct-1",
            "title": "Blue Moon",
            "iswc": "T-000.000.001-0",
            "rights_chain": [{"territory": "World", "children": [composer("c1", 100)]}],
        }
        response = await client.put("/api/works/w1", json=body)

        assert response.status_code == 200
        data = response.json()
        assert data["work_id"] == "w1"
        assert data["valid"] is False
        assert len(data["validation_errors"]) == 2
        assert data["validation"]["valid"] is False

        stored = await client.get("/api/works/w1")
        assert stored.status_code == 200
        assert stored.json()["rights_chain"][0]["totalMechanicalOwnership"] == 100
        assert await db.count_works() == 1

    async def test_put_work_requires_fields(self, client: AsyncClient) -> None:
        response = await client.put("/api/works/w1", json={"title": "Blue Moon"})
        assert response.status_code == 400

    async def test_put_work_structural_error(self, client: AsyncClient) -> None:
        body = {
            "account_id": "acct-1",
            "title": "Blue Moon",
            "rights_chain": [{"territory": "usa", "children": []}],
        }
        response = await client.put("/api/works/w1", json=body)
        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "invalid_territory"

    async def test_missing_work(self, client: AsyncClient) -> None:
        assert (await client.get("/api/works/nope")).status_code == 404


# =============================================================================
# Activity feed
# =============================================================================


class TestEvents:
    async def test_feed_follows_a_job(
        self, client: AsyncClient, runner: MatchingJobRunner, overclaimed: None
    ) -> None:
        job = (await client.post("/api/jobs", json={"job_type": "full_scan"})).json()
        await runner.wait(job["id"], timeout=5)

        response = await client.get("/api/events")

        assert response.status_code == 200
        data = response.json()
        types = [e["type"] for e in data["events"]]
        assert types[0] == "job.started"
        assert "conflict.created" in types
        assert types[-1] == "job.completed"
        seqs = [e["seq"] for e in data["events"]]
        assert seqs == list(range(1, len(seqs) + 1))
        assert data["last_seq"] == seqs[-1]
        assert data["events"][-1]["conflicts_created"] == 1

        later = (await client.get("/api/events", params={"since": data["last_seq"]})).json()
        assert later == {"events": [], "last_seq": data["last_seq"]}

    async def test_limit(self, client: AsyncClient, bus: EventBus) -> None:
        for conflict_id in (1, 2, 3):
            await bus.publish(ConflictEvent(action="resolved", conflict_id=conflict_id))

        data = (await client.get("/api/events", params={"since": 1, "limit": 1})).json()

        assert [e["conflict_id"] for e in data["events"]] == [2]
        assert data["last_seq"] == 2

    async def test_poll_times_out_empty(self, client: AsyncClient) -> None:
        response = await client.get("/api/events", params={"timeout": 0.05})
        assert response.status_code == 200
        assert response.json() == {"events": [], "last_seq": 0}

    async def test_poll_wakes_on_event(self, client: AsyncClient, bus: EventBus) -> None:
        poll = asyncio.create_task(client.get("/api/events", params={"timeout": 5}))
        await asyncio.sleep(0.01)
        await bus.publish(ConflictEvent(action="resolved", conflict_id=7))

        response = await asyncio.wait_for(poll, timeout=5)

        events = response.json()["events"]
        assert [(e["type"], e["conflict_id"]) for e in events] == [("conflict.resolved", 7)]

    @pytest.mark.parametrize(
        "params", [{"since": -1}, {"limit": 0}, {"limit": 501}, {"timeout": 31}, {"timeout": -1}]
    )
    async def test_bad_params(self, client: AsyncClient, params: dict[str, Any]) -> None:
        response = await client.get("/api/events", params=params)
        assert response.status_code == 400
