"""Shared fixtures: policy, in-memory catalog database, private event bus."""

from __future__ import annotations

import pytest

from concord.config import PolicyConfig
from concord.core.catalog_db import CatalogDb
from concord.core.events import EventBus


@pytest.fixture
def policy() -> PolicyConfig:
    """Default policy, independent of any policy.toml on disk."""
    return PolicyConfig(progress_batch_size=2)


@pytest.fixture
async def db() -> CatalogDb:
    """Create an in-memory database for testing."""
    db = CatalogDb(":memory:", page_size=3)
    await db.open()
    await db.ensure_schema()
    yield db
    await db.close()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()
