"""
Concord Web Layer.

HTTP control surface for operator tooling and chain editors.

Components:
- WebServer: FastAPI application with all routes
- routes: api (status/stats/jobs), conflicts, chains (validation/works)
"""

from concord.web.server import WebServer

__all__ = ["WebServer"]
