"""
Collaborators of the matching job.

`CatalogReader` is whatever owns the works (here: `CatalogDb`), and
`CandidateMatcher` decides which works are the same composition. The job only
relies on these protocols; `KeyMatcher` is the reference matcher.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Protocol, runtime_checkable

from concord.core.db.models import WorkRecord
from concord.core.matching import WorkOwnershipSummary, normalize_iswc, normalize_title


@runtime_checkable
class CatalogReader(Protocol):
    def list_works(self, since: float | None = None) -> AsyncIterator[list[WorkRecord]]: ...

    async def count_works(self, since: float | None = None) -> int: ...

    async def get_works(self, work_ids: Iterable[str]) -> list[WorkRecord]: ...


@runtime_checkable
class CandidateMatcher(Protocol):
    async def find_candidate_matches(self, work: WorkOwnershipSummary) -> Sequence[str]:
        """Return the match keys `work` belongs to."""
        ...


class KeyMatcher:
    """
    Reference matcher: works sharing an ISWC match, and so do works sharing a
    normalized title.

    Every work gets a `title:<normalized title>` key, plus an `iswc:<ISWC>`
    key when it carries an ISWC. A registration missing its ISWC therefore
    still meets its re-registrations in the title group, and works whose ISWCs
    disagree meet there too. The job runner skips a group whose works all
    share another, at least as large, group.
    """

    async def find_candidate_matches(self, work: WorkOwnershipSummary) -> Sequence[str]:
        return self.keys_for(work.title, work.iswc)

    @staticmethod
    def keys_for(title: str | None, iswc: str | None) -> list[str]:
        keys = []
        normalized_iswc = normalize_iswc(iswc)
        if normalized_iswc:
            keys.append(f"iswc:{normalized_iswc}")
        normalized_title = normalize_title(title)
        if normalized_title:
            keys.append(f"title:{normalized_title}")
        return keys
