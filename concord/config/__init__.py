"""
Configuration management for Concord.

This module loads the conflict/validation policy (epsilons, severity
breakpoints, job batching) from a TOML file and provides access to it.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Path to the config directory
CONFIG_DIR = Path(__file__).parent


@dataclass(frozen=True, slots=True)
class PolicyConfig:
    """Loaded policy configuration."""

    validity_epsilon: float = 0.01
    overclaim_epsilon: float = 0.1
    critical_excess_above: float = 50.0
    high_excess_above: float = 20.0
    medium_excess_from: float = 5.0
    title_distance_threshold: float = 15.0
    dispute_critical_accounts: int = 3
    progress_batch_size: int = 25
    catalog_page_size: int = 200
    lease_ttl_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.validity_epsilon < 0 or self.overclaim_epsilon < 0:
            raise ValueError("epsilons must be non-negative")
        if not (self.medium_excess_from <= self.high_excess_above <= self.critical_excess_above):
            raise ValueError("severity breakpoints must be ascending: medium <= high <= critical")
        if self.dispute_critical_accounts < 2:
            raise ValueError("dispute_critical_accounts must be at least 2")
        if self.progress_batch_size < 1 or self.catalog_page_size < 1:
            raise ValueError("batch and page sizes must be positive")
        if self.lease_ttl_seconds <= 0:
            raise ValueError("lease_ttl_seconds must be positive")


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    return value if isinstance(value, dict) else {}


def load_policy_config(config_path: Path | None = None) -> PolicyConfig:
    """
    Load policy configuration from a TOML file.

    Args:
        config_path: Path to policy.toml. If None, uses default location.

    Returns:
        Loaded PolicyConfig instance. Missing keys fall back to the defaults.
    """
    if config_path is None:
        config_path = CONFIG_DIR / "policy.toml"

    logger.debug("Loading policy config from %s", config_path)

    with config_path.open("rb") as f:
        data = tomllib.load(f)

    defaults = PolicyConfig()
    validation = _section(data, "validation")
    overclaim = _section(data, "overclaim")
    mismatch = _section(data, "mismatch")
    dispute = _section(data, "dispute")
    jobs = _section(data, "jobs")

    return PolicyConfig(
        validity_epsilon=float(validation.get("epsilon", defaults.validity_epsilon)),
        overclaim_epsilon=float(overclaim.get("epsilon", defaults.overclaim_epsilon)),
        critical_excess_above=float(
            overclaim.get("critical_above", defaults.critical_excess_above)
        ),
        high_excess_above=float(overclaim.get("high_above", defaults.high_excess_above)),
        medium_excess_from=float(overclaim.get("medium_from", defaults.medium_excess_from)),
        title_distance_threshold=float(
            mismatch.get("title_distance_threshold", defaults.title_distance_threshold)
        ),
        dispute_critical_accounts=int(
            dispute.get("critical_accounts", defaults.dispute_critical_accounts)
        ),
        progress_batch_size=int(jobs.get("progress_batch_size", defaults.progress_batch_size)),
        catalog_page_size=int(jobs.get("catalog_page_size", defaults.catalog_page_size)),
        lease_ttl_seconds=float(jobs.get("lease_ttl_seconds", defaults.lease_ttl_seconds)),
    )


# Global singleton instance (lazy loaded)
_policy_config: PolicyConfig | None = None


def get_policy_config() -> PolicyConfig:
    """
    Get the global policy configuration (lazy loaded singleton).

    Returns:
        The PolicyConfig instance.
    """
    global _policy_config

    if _policy_config is None:
        _policy_config = load_policy_config()

    return _policy_config


def reload_policy_config(config_path: Path | None = None) -> PolicyConfig:
    """
    Force reload of policy configuration.

    Returns:
        The newly loaded PolicyConfig instance.
    """
    global _policy_config
    _policy_config = load_policy_config(config_path)
    return _policy_config
