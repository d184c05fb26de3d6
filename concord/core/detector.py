"""
Ownership conflict detection.

`ConflictDetector.detect()` looks at one match group and returns conflict
candidates on two independent axes:

ownership axis (first match wins)
    overclaim           combined ownership across accounts exceeds 100%
    ownership_dispute   accounts claim the same root category with different
                        claimants and their shares cannot both be right

metadata axis (only when the group is not overclaimed)
    data_mismatch       members disagree on ISWC or their titles diverge

Combined ownership is evaluated per territory and per ownership share type.
Within an account only the largest claim counts, so an account registering the
same work twice is not double counted. The worst (territory, share type) is
what gets reported.

Detection is pure; persisting candidates is the job runner's business.
"""

from __future__ import annotations

import itertools
import math
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from concord.config import PolicyConfig, get_policy_config
from concord.core.enums import ConflictType, Severity
from concord.core.matching import (
    MatchGroup,
    WorkOwnershipSummary,
    distinct_iswcs,
    normalize_title,
    title_distance,
)
from concord.core.rights import OWNERSHIP_SHARE_TYPES, WORLD, Category, ShareType

EXPECTED_TOTAL = 100.0


def _excess(total: float) -> float:
    return round(total - EXPECTED_TOTAL, 6)


@dataclass(frozen=True, slots=True)
class ConflictCandidate:
    conflict_type: ConflictType
    severity: Severity
    description: str
    affected_accounts: tuple[str, ...]
    territory: str | None = None
    total_claimed: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_type": self.conflict_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "affected_accounts": list(self.affected_accounts),
            "territory": self.territory,
            "total_claimed": self.total_claimed,
        }


@dataclass(frozen=True, slots=True)
class OwnershipTotal:
    """Combined claimed ownership of a group for one territory and share type."""

    territory: str
    share_type: ShareType
    total: float
    per_account: tuple[tuple[str, float], ...]

    @property
    def excess(self) -> float:
        return _excess(self.total)

    @property
    def claiming_accounts(self) -> list[str]:
        return [account for account, value in self.per_account if value > 0]


@dataclass(frozen=True, slots=True)
class _Dispute:
    territory: str
    share_type: ShareType
    category: Category
    accounts: tuple[str, ...]
    combined: float


def _share_label(share_type: ShareType) -> str:
    return share_type.value.replace("_", " ")


class ConflictDetector:
    """Classifies match groups into conflict candidates."""

    def __init__(self, config: PolicyConfig | None = None) -> None:
        self._config = config

    @property
    def config(self) -> PolicyConfig:
        return self._config or get_policy_config()

    # -------------------------------------------------------------------------
    # Ownership totals
    # -------------------------------------------------------------------------

    def ownership_totals(self, members: Sequence[WorkOwnershipSummary]) -> list[OwnershipTotal]:
        """Combined ownership for every (territory, share type), `World` first."""
        explicit = {t for m in members for t in m.territories if t != WORLD}
        territories = [WORLD, *sorted(explicit)]
        accounts = sorted({m.account_id for m in members})

        totals = []
        for territory in territories:
            for share_type in OWNERSHIP_SHARE_TYPES:
                per_account = tuple(
                    (
                        account,
                        max(
                            m.claimed_ownership(territory, share_type)
                            for m in members
                            if m.account_id == account
                        ),
                    )
                    for account in accounts
                )
                totals.append(
                    OwnershipTotal(
                        territory=territory,
                        share_type=share_type,
                        total=math.fsum(value for _, value in per_account),
                        per_account=per_account,
                    )
                )
        return totals

    def worst_ownership(self, members: Sequence[WorkOwnershipSummary]) -> OwnershipTotal | None:
        worst: OwnershipTotal | None = None
        for total in self.ownership_totals(members):
            if worst is None or total.total > worst.total:
                worst = total
        return worst

    def total_claimed_ownership(self, members: Sequence[WorkOwnershipSummary]) -> float:
        worst = self.worst_ownership(members)
        return worst.total if worst is not None else 0.0

    def overclaim_severity(self, total: float) -> Severity | None:
        """Severity of an overclaim at `total` percent, or None if it is not one."""
        config = self.config
        excess = _excess(total)
        if excess < config.overclaim_epsilon:
            return None
        if excess > config.critical_excess_above:
            return Severity.CRITICAL
        if excess > config.high_excess_above:
            return Severity.HIGH
        if excess >= config.medium_excess_from:
            return Severity.MEDIUM
        return Severity.LOW

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    def detect(
        self,
        group: MatchGroup,
        members: Sequence[WorkOwnershipSummary] | None = None,
    ) -> list[ConflictCandidate]:
        if members is None:
            members = group.members
        if len(members) < 2:
            return []

        candidates: list[ConflictCandidate] = []
        worst = self.worst_ownership(members)
        severity = self.overclaim_severity(worst.total) if worst is not None else None

        if worst is not None and severity is not None:
            affected = worst.claiming_accounts or sorted({m.account_id for m in members})
            candidates.append(
                ConflictCandidate(
                    conflict_type=ConflictType.OVERCLAIM,
                    severity=severity,
                    description=(
                        f"Combined {_share_label(worst.share_type)} in {worst.territory} is "
                        f"{worst.total:g}% across {len(affected)} account(s), "
                        f"{worst.excess:g}% over"
                    ),
                    affected_accounts=tuple(affected),
                    territory=worst.territory,
                    total_claimed=worst.total,
                )
            )
            return candidates

        dispute = self._find_dispute(members)
        if dispute is not None:
            critical = len(dispute.accounts) >= self.config.dispute_critical_accounts
            candidates.append(
                ConflictCandidate(
                    conflict_type=ConflictType.OWNERSHIP_DISPUTE,
                    severity=Severity.CRITICAL if critical else Severity.HIGH,
                    description=(
                        f"{len(dispute.accounts)} accounts claim {dispute.combined:g}% "
                        f"{dispute.category.value} {_share_label(dispute.share_type)} "
                        f"in {dispute.territory} with different claimants"
                    ),
                    affected_accounts=dispute.accounts,
                    territory=dispute.territory,
                    total_claimed=dispute.combined,
                )
            )

        mismatch = self._find_mismatch(members)
        if mismatch is not None:
            candidates.append(mismatch)
        return candidates

    def _find_dispute(self, members: Sequence[WorkOwnershipSummary]) -> _Dispute | None:
        """
        Find the worst root-category dispute across territories and share types.

        Each claimant counts once per category at the largest share any work
        gives it, so an account listing a co-writer it does not control does
        not double count that co-writer. A dispute needs two or more accounts
        naming different claimants whose shares add up to more than 100%.
        """
        epsilon = self.config.overclaim_epsilon
        explicit = {t for m in members for t in m.territories if t != WORLD}
        worst: _Dispute | None = None

        for territory in [WORLD, *sorted(explicit)]:
            for share_type in OWNERSHIP_SHARE_TYPES:
                by_claimant: dict[Category, dict[str, float]] = defaultdict(dict)
                claimants: dict[Category, dict[str, set[str]]] = defaultdict(
                    lambda: defaultdict(set)
                )
                for member in members:
                    per_work: dict[tuple[Category, str], list[float]] = defaultdict(list)
                    for claim in member.claims_for(territory):
                        value = claim.share(share_type)
                        if value <= 0:
                            continue
                        per_work[(claim.category, claim.claimant.key)].append(value)
                        claimants[claim.category][member.account_id].add(claim.claimant.key)
                    for (category, key), values in per_work.items():
                        best = by_claimant[category]
                        best[key] = max(best.get(key, 0.0), math.fsum(values))

                for category in sorted(by_claimant, key=lambda c: c.value):
                    by_account = claimants[category]
                    if len(by_account) < 2:
                        continue
                    if len({frozenset(s) for s in by_account.values()}) < 2:
                        continue
                    combined = math.fsum(by_claimant[category].values())
                    if _excess(combined) < epsilon:
                        continue
                    dispute = _Dispute(
                        territory=territory,
                        share_type=share_type,
                        category=category,
                        accounts=tuple(sorted(by_account)),
                        combined=combined,
                    )
                    if worst is None or (len(dispute.accounts), dispute.combined) > (
                        len(worst.accounts),
                        worst.combined,
                    ):
                        worst = dispute
        return worst

    def _find_mismatch(self, members: Sequence[WorkOwnershipSummary]) -> ConflictCandidate | None:
        accounts = tuple(sorted({m.account_id for m in members}))

        iswcs = distinct_iswcs(members)
        if len(iswcs) >= 2:
            return ConflictCandidate(
                conflict_type=ConflictType.DATA_MISMATCH,
                severity=Severity.HIGH,
                description=f"Members disagree on ISWC: {', '.join(iswcs)}",
                affected_accounts=accounts,
            )

        by_normalized = {normalize_title(m.title): m.title for m in members}
        titles = [by_normalized[key] for key in sorted(by_normalized)]
        distance = max(
            (title_distance(a, b) for a, b in itertools.combinations(titles, 2)),
            default=0.0,
        )
        if distance > self.config.title_distance_threshold:
            return ConflictCandidate(
                conflict_type=ConflictType.DATA_MISMATCH,
                severity=Severity.MEDIUM,
                description=f"Member titles diverge (distance {distance:.1f})",
                affected_accounts=accounts,
            )
        return None
