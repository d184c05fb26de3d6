"""
Cross-account matching primitives.

- `WorkOwnershipSummary`: the per-work view the conflict detector works on
  (root-level claims per territory plus identifying metadata)
- `MatchGroup`: a cluster of works believed to be the same composition
- title / ISWC normalization shared by the reference matcher and the detector
"""

from __future__ import annotations

import math
import re
import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

from rapidfuzz import fuzz

from concord.core.rights import WORLD, Category, Claimant, RightsChain, ShareType

_NON_WORD_RE = re.compile(r"[^\w]+")
_NON_ALNUM_RE = re.compile(r"[^0-9A-Z]")


def normalize_title(title: str | None) -> str:
    """
    Normalize a work title for comparison.

    Casefolds, strips accents and punctuation, collapses whitespace and drops a
    leading "the".
    """
    if not title:
        return ""
    decomposed = unicodedata.normalize("NFKD", title.casefold())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    words = _NON_WORD_RE.sub(" ", stripped).replace("_", " ").split()
    if len(words) > 1 and words[0] == "the":
        words = words[1:]
    return " ".join(words)


def normalize_iswc(iswc: str | None) -> str | None:
    """`T-034.524.680-1` -> `T0345246801`; empty values become None."""
    if iswc is None:
        return None
    normalized = _NON_ALNUM_RE.sub("", iswc.upper())
    return normalized or None


def title_distance(a: str | None, b: str | None) -> float:
    """Distance in [0, 100] between two titles after normalization (0 = identical)."""
    return 100.0 - fuzz.ratio(normalize_title(a), normalize_title(b))


@dataclass(frozen=True, slots=True)
class OwnershipClaim:
    """A root-level node of one territory chain, reduced to what detection needs."""

    territory: str
    claimant: Claimant
    category: Category
    controlled: bool
    mechanical_ownership: float
    performance_ownership: float

    def share(self, share_type: ShareType) -> float:
        if share_type is ShareType.MECHANICAL_OWNERSHIP:
            return self.mechanical_ownership
        if share_type is ShareType.PERFORMANCE_OWNERSHIP:
            return self.performance_ownership
        raise ValueError(f"{share_type.value} is not an ownership share")


@dataclass(frozen=True, slots=True)
class WorkOwnershipSummary:
    work_id: str
    account_id: str
    title: str
    iswc: str | None
    updated_at: float
    territories: tuple[str, ...]
    claims: tuple[OwnershipClaim, ...]

    @classmethod
    def from_chain(
        cls,
        *,
        work_id: str,
        account_id: str,
        title: str,
        iswc: str | None,
        updated_at: float,
        chain: RightsChain,
    ) -> WorkOwnershipSummary:
        claims = []
        for territory_chain in chain:
            for node in territory_chain.roots:
                claims.append(
                    OwnershipClaim(
                        territory=territory_chain.territory,
                        claimant=node.claimant,
                        category=node.category,
                        controlled=node.controlled,
                        mechanical_ownership=node.shares.mechanical_ownership,
                        performance_ownership=node.shares.performance_ownership,
                    )
                )
        return cls(
            work_id=work_id,
            account_id=account_id,
            title=title,
            iswc=iswc,
            updated_at=updated_at,
            territories=tuple(chain.territories),
            claims=tuple(claims),
        )

    @property
    def normalized_iswc(self) -> str | None:
        return normalize_iswc(self.iswc)

    def resolve_territory(self, territory: str) -> str | None:
        if territory in self.territories:
            return territory
        if WORLD in self.territories:
            return WORLD
        return None

    def claims_for(self, territory: str) -> list[OwnershipClaim]:
        """Root-level claims governing `territory` (explicit chain, else World)."""
        resolved = self.resolve_territory(territory)
        if resolved is None:
            return []
        return [claim for claim in self.claims if claim.territory == resolved]

    def claimed_ownership(self, territory: str, share_type: ShareType) -> float:
        """Sum of this work's controlled root-level ownership in `territory`."""
        return math.fsum(
            claim.share(share_type) for claim in self.claims_for(territory) if claim.controlled
        )


def _canonical_order(member: WorkOwnershipSummary) -> tuple[bool, float, str]:
    return (member.normalized_iswc is None, -member.updated_at, member.work_id)


@dataclass(frozen=True, slots=True)
class MatchGroup:
    """
    A cluster of works believed to be the same underlying composition.

    `match_key` is the matcher's stable identity for the cluster. The canonical
    title and ISWC come from the most complete member: one with an ISWC first,
    then the most recently updated, then the lowest work id.
    """

    match_key: str
    canonical_title: str
    canonical_iswc: str | None
    members: tuple[WorkOwnershipSummary, ...]
    total_claimed_ownership: float = 0.0

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def account_ids(self) -> list[str]:
        return sorted({member.account_id for member in self.members})

    @property
    def territories(self) -> list[str]:
        """`World` first, then every explicitly configured territory in code order."""
        explicit = {t for member in self.members for t in member.territories if t != WORLD}
        return [WORLD, *sorted(explicit)]

    @classmethod
    def from_members(
        cls, match_key: str, members: Iterable[WorkOwnershipSummary]
    ) -> MatchGroup:
        ordered = tuple(sorted(members, key=lambda m: m.work_id))
        if not ordered:
            raise ValueError("a match group needs at least one member")
        canonical = min(ordered, key=_canonical_order)
        return cls(
            match_key=match_key,
            canonical_title=canonical.title,
            canonical_iswc=canonical.iswc if canonical.normalized_iswc else None,
            members=ordered,
        )

    def with_total(self, total_claimed_ownership: float) -> MatchGroup:
        return replace(self, total_claimed_ownership=total_claimed_ownership)


def distinct_iswcs(members: Sequence[WorkOwnershipSummary]) -> list[str]:
    return sorted({m.normalized_iswc for m in members if m.normalized_iswc is not None})
