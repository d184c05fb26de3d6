"""
Rights chain validation.

`RightsChainValidator.validate()` recomputes every territory's rollups and
checks that each of the four share totals is 100% within the configured
tolerance. Invariant violations are returned as data; structural problems
(duplicate territories, bad territory codes) raise `StructuralChainError`.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from concord.config import PolicyConfig, get_policy_config
from concord.core.rights import (
    RightsChain,
    Shares,
    ShareType,
    StructuralChainError,
    StructuralErrorKind,
    TerritoryChain,
    is_valid_territory,
)

logger = logging.getLogger(__name__)

EXPECTED_TOTAL = 100.0

# Deviations are compared after rounding so float slop never flags a valid chain.
DEVIATION_PRECISION = 6


def deviation_from_full(value: float) -> float:
    return round(value - EXPECTED_TOTAL, DEVIATION_PRECISION)


@dataclass(frozen=True, slots=True)
class Violation:
    """One territory rollup that does not sum to 100%."""

    territory: str
    share_type: ShareType
    actual: float
    deviation: float

    @property
    def message(self) -> str:
        return (
            f"{self.territory}: {self.share_type.value} totals {self.actual:g}% "
            f"({self.deviation:+g} from 100%)"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "territory": self.territory,
            "share_type": self.share_type.value,
            "actual": self.actual,
            "expected": EXPECTED_TOTAL,
            "deviation": self.deviation,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    violations: tuple[Violation, ...]
    rollups: dict[str, Shares]

    @property
    def is_valid(self) -> bool:
        return not self.violations

    def errors(self) -> list[str]:
        return [violation.message for violation in self.violations]

    def to_dict(self) -> dict[str, Any]:
        territories = []
        for territory, totals in self.rollups.items():
            territories.append(
                {
                    "territory": territory,
                    "totals": {t.value: totals.get(t) for t in ShareType},
                    "deviations": {t.value: deviation_from_full(totals.get(t)) for t in ShareType},
                }
            )
        return {
            "valid": self.is_valid,
            "violations": [violation.to_dict() for violation in self.violations],
            "territories": territories,
        }


class RightsChainValidator:
    """Validates rights chains against the 100%-per-share-type invariant."""

    def __init__(self, config: PolicyConfig | None = None) -> None:
        self._config = config

    @property
    def epsilon(self) -> float:
        config = self._config or get_policy_config()
        return config.validity_epsilon

    def validate(self, chain: Sequence[TerritoryChain] | RightsChain) -> ValidationResult:
        """
        Validate a work's rights chain.

        Refreshes every node's cached subtree totals and returns the territory
        rollups together with one violation per (territory, share type) whose
        rollup is off by more than the tolerance. An empty chain is valid; a
        territory without nodes yields four violations.

        Raises:
            StructuralChainError: duplicate or invalid territory entries.
        """
        territories = list(chain)
        self._check_structure(territories)

        epsilon = self.epsilon
        violations: list[Violation] = []
        rollups: dict[str, Shares] = {}
        for territory_chain in territories:
            totals = territory_chain.recompute()
            rollups[territory_chain.territory] = totals
            for share_type in ShareType:
                actual = totals.get(share_type)
                deviation = deviation_from_full(actual)
                if abs(deviation) > epsilon:
                    violations.append(
                        Violation(
                            territory=territory_chain.territory,
                            share_type=share_type,
                            actual=actual,
                            deviation=deviation,
                        )
                    )

        if violations:
            logger.debug(
                "Chain has %d violation(s) across %d territories",
                len(violations),
                len({v.territory for v in violations}),
            )
        return ValidationResult(violations=tuple(violations), rollups=rollups)

    @staticmethod
    def _check_structure(territories: list[TerritoryChain]) -> None:
        seen: set[str] = set()
        for territory_chain in territories:
            if not isinstance(territory_chain, TerritoryChain):
                raise StructuralChainError(
                    StructuralErrorKind.MALFORMED,
                    f"expected a TerritoryChain, got {type(territory_chain).__name__}",
                )
            territory = territory_chain.territory
            if not is_valid_territory(territory):
                raise StructuralChainError(
                    StructuralErrorKind.INVALID_TERRITORY,
                    f"invalid territory {territory!r}",
                    territory=str(territory),
                )
            if territory in seen:
                raise StructuralChainError(
                    StructuralErrorKind.DUPLICATE_TERRITORY,
                    f"territory {territory} is listed more than once",
                    territory=territory,
                )
            seen.add(territory)
