"""
Shared enumerations for conflicts and matching jobs.

Kept in their own module so that the DB row models, the detector and the job
runner can all import them without pulling each other in.
"""

from __future__ import annotations

from enum import Enum


class ConflictType(Enum):
    """Mutually exclusive classification of a detected conflict."""

    OVERCLAIM = "overclaim"
    DATA_MISMATCH = "data_mismatch"
    OWNERSHIP_DISPUTE = "ownership_dispute"


class Severity(Enum):
    """Conflict severity, ordered from LOW to CRITICAL."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANKS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank


_SEVERITY_RANKS: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class JobType(Enum):
    FULL_SCAN = "full_scan"
    INCREMENTAL = "incremental"


class JobStatus(Enum):
    """
    Matching job state machine.

        pending -> running -> completed | failed | cancelled

    Terminal states are final.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    def can_transition_to(self, target: JobStatus) -> bool:
        return target in _TRANSITIONS[self]


_TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}
