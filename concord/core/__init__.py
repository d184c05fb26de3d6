"""
Core domain package.

This package contains the rights-chain model, the conflict detection engine and
the matching job orchestration. It should stay independent of any UI layer
(web, CLI, etc.): nothing in here knows about HTTP.

We intentionally keep exports minimal; consumers should usually import from the
specific module they need (e.g. `concord.core.rights`).
"""

from __future__ import annotations

__all__: list[str] = [
    "CoreError",
    "NotFoundError",
]


class CoreError(Exception):
    """Base class for core-layer exceptions."""


class NotFoundError(CoreError):
    """Raised when an entity (work/conflict/job/etc.) cannot be found."""
