"""
Concord Server - Main Server Module

This module contains the ConcordServer class that wires the catalog database,
the matching job runner, the conflict queue and the web server together and
manages the application lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

from concord.config import PolicyConfig, get_policy_config
from concord.core.catalog_db import CatalogDb
from concord.core.conflicts import ConflictQueue
from concord.core.enums import JobStatus, JobType
from concord.core.jobs import MatchingJobRunner
from concord.core.validator import RightsChainValidator
from concord.web.server import WebServer

logger = logging.getLogger(__name__)


class ConcordServer:
    """
    Main Concord server that coordinates all components.

    The server manages:
    - Catalog database (SQLite)
    - Matching job runner (background asyncio tasks, one at a time)
    - Conflict queue
    - Web server for the HTTP API
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        *,
        web_port: int = 8400,
        db_path: Path | None = None,
        config: PolicyConfig | None = None,
    ) -> None:
        """
        Initialize the Concord server.

        Args:
            host: Host address to bind to.
            web_port: HTTP port (default 8400).
            db_path: Optional path to the catalog SQLite DB file.
            config: Optional policy; defaults to the global policy config.
        """
        self.host = host
        self.web_port = web_port
        self.config = config or get_policy_config()

        default_db_path = Path("concord-catalog.sqlite3")
        self.catalog_db = CatalogDb(
            db_path or default_db_path, page_size=self.config.catalog_page_size
        )
        self.conflict_queue = ConflictQueue(self.catalog_db)
        self.job_runner = MatchingJobRunner(
            self.catalog_db, conflicts=self.conflict_queue, config=self.config
        )
        self.validator = RightsChainValidator(self.config)

        self.web_server: WebServer | None = None

        self._running = False
        self._shutdown_event: asyncio.Event | None = None

    async def open(self) -> None:
        """Open the database and recover jobs left behind by a dead worker."""
        await self.catalog_db.open()
        await self.catalog_db.ensure_schema()

        recovered = await self.job_runner.recover_stale_jobs()
        if recovered:
            logger.warning("Marked %d stale matching job(s) as failed", recovered)

    async def start(self) -> None:
        """Start all server components."""
        logger.info("Starting Concord server on %s:%d", self.host, self.web_port)

        self._running = True
        self._shutdown_event = asyncio.Event()

        await self.open()

        self.web_server = WebServer(
            catalog_db=self.catalog_db,
            job_runner=self.job_runner,
            conflict_queue=self.conflict_queue,
            validator=self.validator,
        )
        await self.web_server.start(host=self.host, port=self.web_port)

        logger.info("Concord server started successfully")

    async def stop(self) -> None:
        """Stop all server components gracefully."""
        if not self._running:
            return

        logger.info("Stopping Concord server...")
        self._running = False

        if self.web_server:
            await self.web_server.stop()

        await self.job_runner.shutdown()
        await self.catalog_db.close()

        if self._shutdown_event:
            self._shutdown_event.set()

        logger.info("Concord server stopped")

    async def run(self) -> None:
        """
        Run the server until shutdown is requested.

        This method starts all components and waits for a shutdown signal
        (SIGINT or SIGTERM).
        """
        await self.start()

        loop = asyncio.get_running_loop()

        def handle_signal() -> None:
            logger.info("Received shutdown signal")
            if self._shutdown_event:
                self._shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, handle_signal)
            except NotImplementedError:
                # Signal handlers not supported on Windows
                pass

        if self._shutdown_event:
            await self._shutdown_event.wait()

        await self.stop()

    async def run_once(self, job_type: JobType | str) -> int:
        """
        Run a single matching job without the web server.

        Returns a process exit code: 0 when the job completed.
        """
        await self.open()
        try:
            job = await self.job_runner.run_job(job_type)
        finally:
            await self.job_runner.shutdown()
            await self.catalog_db.close()

        logger.info(
            "Job %d %s: %d works, %d groups, %d new conflicts",
            job.id,
            job.status.value,
            job.processed_works,
            job.matches_found,
            job.conflicts_created,
        )
        return 0 if job.status is JobStatus.COMPLETED else 1

    @property
    def is_running(self) -> bool:
        """Check if the server is currently running."""
        return self._running
