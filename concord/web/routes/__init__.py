"""
Web Routes Package.

This package contains FastAPI route modules:
- api: status, stats and matching jobs (/api/status, /api/stats, /api/jobs/*)
- conflicts: conflict queue (/api/conflicts/*)
- chains: chain validation and works (/api/chains/validate, /api/works/*)
"""

from concord.web.routes.api import register_api_routes
from concord.web.routes.chains import register_chain_routes
from concord.web.routes.conflicts import register_conflict_routes

__all__ = [
    "register_api_routes",
    "register_chain_routes",
    "register_conflict_routes",
]
