"""
Database schema + migrations for Concord.

- Connection management and the public `CatalogDb` facade live in `catalog_db.py`
- Schema creation, schema versioning, and forward-only migrations live here

Design notes:
- We use SQLite `PRAGMA user_version` as the schema version.
- Migrations are forward-only (no downgrade support).
- Timestamps are stored as REAL unix epoch seconds.
"""

from __future__ import annotations

from typing import Final

import aiosqlite

# Bump when you change the schema and add a migration in `migrate()`.
SCHEMA_VERSION: Final[int] = 1


async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """
    Create or migrate schema to current version.

    This function assumes:
    - `conn` is an open aiosqlite connection
    - foreign_keys pragma is enabled by the caller
    """
    # meta: reserved for key-value config/flags
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )
    await conn.commit()

    cursor = await conn.execute("PRAGMA user_version;")
    row = await cursor.fetchone()
    current = int(row[0]) if row is not None else 0

    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current} is newer than supported {SCHEMA_VERSION}."
        )

    if current == SCHEMA_VERSION:
        return

    await migrate(conn, from_version=current, to_version=SCHEMA_VERSION)
    await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION};")
    await conn.commit()


async def migrate(conn: aiosqlite.Connection, *, from_version: int, to_version: int) -> None:
    """Perform forward-only migrations."""
    # v0 -> v1
    if from_version == 0 and to_version >= 1:
        # Catalog: one row per registered work, rights chain as JSON.
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS works (
                work_id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                title TEXT NOT NULL,
                iswc TEXT,
                rights_chain TEXT NOT NULL DEFAULT '[]',
                valid INTEGER NOT NULL DEFAULT 0,
                validation_errors TEXT NOT NULL DEFAULT '[]',
                updated_at REAL NOT NULL
            )
            """
        )
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_works_updated_at ON works(updated_at);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_works_account ON works(account_id);")

        # Matcher output: which keys each work belongs to (singletons included).
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS work_match_keys (
                work_id TEXT NOT NULL,
                match_key TEXT NOT NULL,
                PRIMARY KEY (work_id, match_key)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_work_match_keys_key ON work_match_keys(match_key);"
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS match_groups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                match_key TEXT NOT NULL UNIQUE,
                canonical_title TEXT NOT NULL,
                canonical_iswc TEXT,
                member_count INTEGER NOT NULL DEFAULT 0,
                total_claimed_ownership REAL NOT NULL DEFAULT 0,
                last_job_id INTEGER,
                updated_at REAL NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS match_group_members (
                group_id INTEGER NOT NULL REFERENCES match_groups(id) ON DELETE CASCADE,
                work_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                claimed_ownership REAL NOT NULL DEFAULT 0,
                PRIMARY KEY (group_id, work_id)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_group_members_work ON match_group_members(work_id);"
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conflicts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                match_group_id INTEGER NOT NULL REFERENCES match_groups(id),
                conflict_type TEXT NOT NULL,
                severity TEXT NOT NULL,
                severity_rank INTEGER NOT NULL,
                description TEXT NOT NULL,
                affected_accounts TEXT NOT NULL,
                territory TEXT,
                total_claimed REAL,
                resolved INTEGER NOT NULL DEFAULT 0,
                resolved_at REAL,
                resolution_notes TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                job_id INTEGER
            )
            """
        )
        # At most one open conflict per (group, type).
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_conflicts_open
            ON conflicts(match_group_id, conflict_type) WHERE resolved = 0;
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_conflicts_triage "
            "ON conflicts(resolved, severity_rank DESC, id);"
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS matching_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                processed_works INTEGER NOT NULL DEFAULT 0,
                total_works INTEGER NOT NULL DEFAULT 0,
                matches_found INTEGER NOT NULL DEFAULT 0,
                conflicts_created INTEGER NOT NULL DEFAULT 0,
                failed_items INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                since REAL,
                created_at REAL NOT NULL,
                started_at REAL,
                finished_at REAL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_matching_jobs_status ON matching_jobs(status);"
        )

        # Single-row lease guarding the one-running-job rule across processes.
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS job_lease (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                owner TEXT,
                job_id INTEGER,
                expires_at REAL
            )
            """
        )
        await conn.execute("INSERT OR IGNORE INTO job_lease (id) VALUES (1);")

        await conn.commit()
        from_version = 1

    if from_version != to_version:
        raise RuntimeError(f"No migration path from schema {from_version} to {to_version}.")
