"""
DB models (DTOs) and small normalization helpers for the catalog database.

This module is intentionally lightweight:
- No DB connection knowledge
- No SQL
- Pure dataclasses + helper functions
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from concord.core.enums import ConflictType, JobStatus, JobType, Severity
from concord.core.matching import WorkOwnershipSummary
from concord.core.rights import RightsChain, StructuralChainError, StructuralErrorKind


@dataclass(frozen=True, slots=True)
class WorkRecord:
    """
    A work as stored in the catalog.

    `rights_chain` is kept as the raw JSON text so that a malformed chain only
    fails when the work is actually used (see `to_summary`).
    """

    work_id: str
    account_id: str
    title: str
    iswc: str | None
    rights_chain: str
    valid: bool
    validation_errors: tuple[str, ...]
    updated_at: float

    def chain(self) -> RightsChain:
        try:
            payload = json.loads(self.rights_chain)
        except (TypeError, ValueError) as e:
            raise StructuralChainError(
                StructuralErrorKind.MALFORMED, f"work {self.work_id}: unreadable rights chain: {e}"
            ) from e
        return RightsChain.from_payload(payload)

    def to_summary(self) -> WorkOwnershipSummary:
        """Reduce the record to the view the conflict detector needs."""
        return WorkOwnershipSummary.from_chain(
            work_id=self.work_id,
            account_id=self.account_id,
            title=self.title,
            iswc=self.iswc,
            updated_at=self.updated_at,
            chain=self.chain(),
        )

    def to_dict(self) -> dict[str, Any]:
        try:
            chain: Any = json.loads(self.rights_chain)
        except ValueError:
            chain = None
        return {
            "work_id": self.work_id,
            "account_id": self.account_id,
            "title": self.title,
            "iswc": self.iswc,
            "rights_chain": chain,
            "valid": self.valid,
            "validation_errors": list(self.validation_errors),
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True, slots=True)
class UpsertWork:
    """
    Input record used by importers and the works endpoint.

    `work_id` is required and must identify the same work across updates.
    `rights_chain` is the wire payload (list of territory objects).
    `updated_at` defaults to the time of the upsert.
    """

    work_id: str
    account_id: str
    title: str
    iswc: str | None = None
    rights_chain: tuple[dict[str, Any], ...] | list[dict[str, Any]] = ()
    valid: bool = False
    validation_errors: tuple[str, ...] = ()
    updated_at: float | None = None


@dataclass(frozen=True, slots=True)
class MatchGroupRow:
    """Match group record as stored in SQLite."""

    id: int
    match_key: str
    canonical_title: str
    canonical_iswc: str | None
    member_count: int
    total_claimed_ownership: float
    last_job_id: int | None
    updated_at: float


@dataclass(frozen=True, slots=True)
class GroupMemberRow:
    """A member work of a match group, joined with the work's title/ISWC."""

    group_id: int
    work_id: str
    account_id: str
    title: str | None
    iswc: str | None
    claimed_ownership: float


@dataclass(frozen=True, slots=True)
class ConflictRow:
    """
    Conflict record as stored in SQLite.

    Notes:
    - At most one unresolved conflict exists per (match_group_id, conflict_type).
    - Conflicts are never deleted; resolution is an explicit operator action.
    """

    id: int
    match_group_id: int
    conflict_type: ConflictType
    severity: Severity
    description: str
    affected_accounts: tuple[str, ...]
    territory: str | None
    total_claimed: float | None
    resolved: bool
    resolved_at: float | None
    resolution_notes: str | None
    created_at: float
    updated_at: float
    job_id: int | None


@dataclass(frozen=True, slots=True)
class MatchingJobRow:
    """Matching job record as stored in SQLite."""

    id: int
    job_type: JobType
    status: JobStatus
    processed_works: int
    total_works: int
    matches_found: int
    conflicts_created: int
    failed_items: int
    error_message: str | None
    cancel_requested: bool
    since: float | None
    created_at: float
    started_at: float | None
    finished_at: float | None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def progress(self) -> float:
        """Percentage of works processed (0 when the total is not known yet)."""
        if self.total_works <= 0:
            return 100.0 if self.status is JobStatus.COMPLETED else 0.0
        return round(min(self.processed_works / self.total_works, 1.0) * 100.0, 2)


def normalize_text(value: str | None) -> str | None:
    """
    Normalize optional text fields:
    - strip whitespace
    - coerce empty strings to None
    """
    if value is None:
        return None
    v = value.strip()
    return v if v else None
