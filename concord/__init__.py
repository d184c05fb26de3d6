"""
Concord - rights-chain validation and ownership conflict detection.

Concord keeps a catalog of musical works with their per-territory rights
chains, validates those chains as they are edited, and runs matching jobs that
find works registered by several accounts whose combined claims do not add up.
"""

__version__ = "0.1.0"

from concord.server import ConcordServer

__all__ = ["ConcordServer", "__version__"]
