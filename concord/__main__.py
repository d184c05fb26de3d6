"""
Concord - Entry Point

Run with: python -m concord
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from concord import __version__
from concord.config import reload_policy_config
from concord.server import ConcordServer


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="concord",
        description="Concord - rights-chain validation and ownership conflict detection",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host address to bind to (default: 127.0.0.1)",
    )

    parser.add_argument(
        "--web-port",
        type=int,
        default=8400,
        help="HTTP port (default: 8400)",
    )

    parser.add_argument(
        "--db",
        type=Path,
        default=Path("concord-catalog.sqlite3"),
        help="Catalog database file (default: concord-catalog.sqlite3)",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Policy TOML file (default: bundled policy.toml)",
    )

    parser.add_argument(
        "--run-job",
        choices=["full_scan", "incremental"],
        default=None,
        help="Run one matching job and exit instead of serving HTTP",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the application."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    logger = logging.getLogger(__name__)

    try:
        config = reload_policy_config(args.config)
    except (OSError, ValueError) as e:
        logger.error("Cannot load policy config: %s", e)
        return 2

    server = ConcordServer(host=args.host, web_port=args.web_port, db_path=args.db, config=config)

    try:
        if args.run_job:
            logger.info("Running %s job against %s", args.run_job, args.db)
            return asyncio.run(server.run_once(args.run_job))

        logger.info("Starting Concord...")
        asyncio.run(server.run())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1

    logger.info("Server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
