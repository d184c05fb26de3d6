"""
Web Server Module for Concord.

This module provides the WebServer class that creates and manages the FastAPI
application and registers all routes:
- REST API for job control and stats
- Conflict queue triage endpoints
- Rights chain validation and work registration
- Activity feed of job and conflict events
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from concord import __version__
from concord.web.activity import ActivityFeed
from concord.web.routes.api import register_api_routes
from concord.web.routes.chains import register_chain_routes
from concord.web.routes.conflicts import register_conflict_routes

if TYPE_CHECKING:
    from concord.core.catalog_db import CatalogDb
    from concord.core.conflicts import ConflictQueue
    from concord.core.events import EventBus
    from concord.core.jobs import MatchingJobRunner
    from concord.core.validator import RightsChainValidator

logger = logging.getLogger(__name__)


class WebServer:
    """FastAPI-based HTTP control surface for Concord."""

    def __init__(
        self,
        catalog_db: CatalogDb,
        job_runner: MatchingJobRunner,
        conflict_queue: ConflictQueue,
        validator: RightsChainValidator | None = None,
        bus: EventBus | None = None,
    ) -> None:
        """
        Initialize the WebServer.

        Args:
            catalog_db: Open catalog database
            job_runner: Runner used to start/cancel matching jobs
            conflict_queue: Operator-facing conflict store
            validator: Optional validator (defaults to one using the global policy)
            bus: Event bus feeding /api/events (defaults to the global bus)
        """
        self.catalog_db = catalog_db
        self.job_runner = job_runner
        self.conflict_queue = conflict_queue
        self.validator = validator
        self.activity = ActivityFeed(bus)

        self.app = FastAPI(
            title="Concord",
            description="Rights-chain validation and ownership conflict detection",
            version=__version__,
        )

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None

        self._register_routes()

    def _register_routes(self) -> None:
        """Register all routes with the FastAPI app."""

        @self.app.get("/health")
        async def health_check() -> dict[str, str]:
            """Health check endpoint."""
            return {"status": "ok", "server": "concord"}

        register_api_routes(
            self.app,
            catalog_db=self.catalog_db,
            job_runner=self.job_runner,
            conflict_queue=self.conflict_queue,
            activity=self.activity,
        )
        register_conflict_routes(self.app, conflict_queue=self.conflict_queue)
        register_chain_routes(self.app, catalog_db=self.catalog_db, validator=self.validator)

    async def start(self, host: str = "127.0.0.1", port: int = 8400) -> None:
        """
        Start the web server in the background.

        Args:
            host: Host address to bind to
            port: Port to listen on
        """
        await self.activity.start()

        config = uvicorn.Config(
            self.app,
            host=host,
            port=port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve())

        logger.info("Web server started on http://%s:%d", host, port)

    async def stop(self) -> None:
        """Stop the web server."""
        if self._server is not None:
            self._server.should_exit = True
            self._server = None
        if self._serve_task is not None:
            await asyncio.gather(self._serve_task, return_exceptions=True)
            self._serve_task = None
        await self.activity.stop()

        logger.info("Web server stopped")
