"""
Internal DB subpackage for Concord.

Splits the catalog database into focused units (models, schema/migrations and
query groups) while keeping `CatalogDb` as the single public interface that the
rest of the codebase imports.

External code should import `CatalogDb` from `concord.core.catalog_db`.
"""

from __future__ import annotations

# Models / DTOs
from .models import (
    ConflictRow,
    GroupMemberRow,
    MatchGroupRow,
    MatchingJobRow,
    UpsertWork,
    WorkRecord,
)

# Schema / migrations
from .schema import SCHEMA_VERSION, ensure_schema, migrate

__all__ = [
    # models
    "WorkRecord",
    "UpsertWork",
    "MatchGroupRow",
    "GroupMemberRow",
    "ConflictRow",
    "MatchingJobRow",
    # schema
    "SCHEMA_VERSION",
    "ensure_schema",
    "migrate",
]
