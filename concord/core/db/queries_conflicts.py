"""
Conflict queries extracted from `concord.core.catalog_db.CatalogDb`.

Design:
- Functions take an open `aiosqlite.Connection` and return dataclasses/dicts.
- Listing is ordered by severity (most severe first), then id.

Important:
- Do NOT interpolate user input into SQL. Filters are assembled from fixed
  fragments; values are always bound as parameters.
"""

from __future__ import annotations

import json
from typing import Any

import aiosqlite

from concord.core.db.models import ConflictRow
from concord.core.enums import ConflictType, Severity

_CONFLICT_COLUMNS = """
    id, match_group_id, conflict_type, severity, description, affected_accounts,
    territory, total_claimed, resolved, resolved_at, resolution_notes,
    created_at, updated_at, job_id
"""


def _row_to_conflict(row: aiosqlite.Row) -> ConflictRow:
    return ConflictRow(
        id=int(row["id"]),
        match_group_id=int(row["match_group_id"]),
        conflict_type=ConflictType(row["conflict_type"]),
        severity=Severity(row["severity"]),
        description=row["description"],
        affected_accounts=tuple(json.loads(row["affected_accounts"])),
        territory=row["territory"],
        total_claimed=float(row["total_claimed"]) if row["total_claimed"] is not None else None,
        resolved=bool(row["resolved"]),
        resolved_at=float(row["resolved_at"]) if row["resolved_at"] is not None else None,
        resolution_notes=row["resolution_notes"],
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
        job_id=int(row["job_id"]) if row["job_id"] is not None else None,
    )


def _filters(
    resolved: bool | None,
    conflict_type: ConflictType | None,
    severity: Severity | None,
) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if resolved is not None:
        clauses.append("resolved = ?")
        params.append(1 if resolved else 0)
    if conflict_type is not None:
        clauses.append("conflict_type = ?")
        params.append(conflict_type.value)
    if severity is not None:
        clauses.append("severity = ?")
        params.append(severity.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


async def get_conflict(conn: aiosqlite.Connection, conflict_id: int) -> ConflictRow | None:
    cursor = await conn.execute(
        f"SELECT {_CONFLICT_COLUMNS} FROM conflicts WHERE id = ?;",
        (int(conflict_id),),
    )
    row = await cursor.fetchone()
    return _row_to_conflict(row) if row is not None else None


async def get_open_conflict(
    conn: aiosqlite.Connection, match_group_id: int, conflict_type: ConflictType
) -> ConflictRow | None:
    cursor = await conn.execute(
        f"""
        SELECT {_CONFLICT_COLUMNS} FROM conflicts
        WHERE match_group_id = ? AND conflict_type = ? AND resolved = 0;
        """,
        (int(match_group_id), conflict_type.value),
    )
    row = await cursor.fetchone()
    return _row_to_conflict(row) if row is not None else None


async def insert_conflict(
    conn: aiosqlite.Connection,
    *,
    match_group_id: int,
    conflict_type: ConflictType,
    severity: Severity,
    description: str,
    affected_accounts: tuple[str, ...],
    territory: str | None,
    total_claimed: float | None,
    job_id: int | None,
    now: float,
) -> int:
    """
    Insert a new open conflict.

    Raises `sqlite3.IntegrityError` if an open conflict of the same type
    already exists for the group.
    """
    cursor = await conn.execute(
        """
        INSERT INTO conflicts(
            match_group_id, conflict_type, severity, severity_rank, description,
            affected_accounts, territory, total_claimed, resolved,
            created_at, updated_at, job_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?);
        """,
        (
            int(match_group_id),
            conflict_type.value,
            severity.value,
            severity.rank,
            description,
            json.dumps(list(affected_accounts)),
            territory,
            total_claimed,
            now,
            now,
            job_id,
        ),
    )
    return int(cursor.lastrowid)


async def update_open_conflict(
    conn: aiosqlite.Connection,
    conflict_id: int,
    *,
    severity: Severity,
    description: str,
    affected_accounts: tuple[str, ...],
    territory: str | None,
    total_claimed: float | None,
    job_id: int | None,
    now: float,
) -> bool:
    """Refresh an unresolved conflict. Resolved conflicts are left untouched."""
    cursor = await conn.execute(
        """
        UPDATE conflicts
        SET severity = ?, severity_rank = ?, description = ?, affected_accounts = ?,
            territory = ?, total_claimed = ?, job_id = ?, updated_at = ?
        WHERE id = ? AND resolved = 0;
        """,
        (
            severity.value,
            severity.rank,
            description,
            json.dumps(list(affected_accounts)),
            territory,
            total_claimed,
            job_id,
            now,
            int(conflict_id),
        ),
    )
    return cursor.rowcount > 0


async def resolve_conflict(
    conn: aiosqlite.Connection, conflict_id: int, *, notes: str | None, now: float
) -> bool:
    """Mark a conflict resolved. Returns False if it was already resolved (or missing)."""
    cursor = await conn.execute(
        """
        UPDATE conflicts
        SET resolved = 1, resolved_at = ?, resolution_notes = ?, updated_at = ?
        WHERE id = ? AND resolved = 0;
        """,
        (now, notes, now, int(conflict_id)),
    )
    return cursor.rowcount > 0


async def list_conflicts(
    conn: aiosqlite.Connection,
    *,
    resolved: bool | None = None,
    conflict_type: ConflictType | None = None,
    severity: Severity | None = None,
    limit: int,
    offset: int,
) -> list[ConflictRow]:
    where, params = _filters(resolved, conflict_type, severity)
    cursor = await conn.execute(
        f"""
        SELECT {_CONFLICT_COLUMNS}
        FROM conflicts
        {where}
        ORDER BY severity_rank DESC, id
        LIMIT ? OFFSET ?;
        """,
        (*params, int(limit), int(offset)),
    )
    rows = await cursor.fetchall()
    return [_row_to_conflict(r) for r in rows]


async def count_conflicts(
    conn: aiosqlite.Connection,
    *,
    resolved: bool | None = None,
    conflict_type: ConflictType | None = None,
    severity: Severity | None = None,
) -> int:
    where, params = _filters(resolved, conflict_type, severity)
    cursor = await conn.execute(f"SELECT COUNT(*) AS c FROM conflicts {where};", params)
    row = await cursor.fetchone()
    return int(row["c"]) if row else 0


async def count_unresolved_by_severity(conn: aiosqlite.Connection) -> dict[str, int]:
    cursor = await conn.execute(
        "SELECT severity, COUNT(*) AS c FROM conflicts WHERE resolved = 0 GROUP BY severity;"
    )
    rows = await cursor.fetchall()
    counts = {severity.value: 0 for severity in Severity}
    for r in rows:
        counts[r["severity"]] = int(r["c"])
    return counts
