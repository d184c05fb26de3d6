"""
Work and match-key queries extracted from `concord.core.catalog_db.CatalogDb`.

Design:
- Functions are *pure DB helpers*: they take an open `aiosqlite.Connection`
  and return rows/materialized dataclasses.
- These functions assume `conn.row_factory = aiosqlite.Row`.
- Works are always returned ordered by `work_id` so scans are deterministic.

Important:
- Do NOT interpolate user input into SQL.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence

import aiosqlite

from concord.core.db.models import WorkRecord

_WORK_COLUMNS = """
    work_id, account_id, title, iswc, rights_chain, valid, validation_errors, updated_at
"""


def _row_to_work(row: aiosqlite.Row) -> WorkRecord:
    try:
        errors = tuple(str(e) for e in json.loads(row["validation_errors"] or "[]"))
    except ValueError:
        errors = ()
    return WorkRecord(
        work_id=row["work_id"],
        account_id=row["account_id"],
        title=row["title"],
        iswc=row["iswc"],
        rights_chain=row["rights_chain"],
        valid=bool(row["valid"]),
        validation_errors=errors,
        updated_at=float(row["updated_at"]),
    )


async def get_work(conn: aiosqlite.Connection, work_id: str) -> WorkRecord | None:
    cursor = await conn.execute(
        f"SELECT {_WORK_COLUMNS} FROM works WHERE work_id = ?;",
        (work_id,),
    )
    row = await cursor.fetchone()
    return _row_to_work(row) if row is not None else None


async def get_works(conn: aiosqlite.Connection, work_ids: Iterable[str]) -> list[WorkRecord]:
    ids = sorted(set(work_ids))
    if not ids:
        return []
    placeholders = ", ".join("?" for _ in ids)
    cursor = await conn.execute(
        f"SELECT {_WORK_COLUMNS} FROM works WHERE work_id IN ({placeholders}) ORDER BY work_id;",
        ids,
    )
    rows = await cursor.fetchall()
    return [_row_to_work(r) for r in rows]


async def list_works_page(
    conn: aiosqlite.Connection,
    *,
    since: float | None,
    after_work_id: str | None,
    limit: int,
) -> list[WorkRecord]:
    """
    One page of works ordered by id (keyset pagination).

    `after_work_id` is the last id of the previous page, None for the first.
    """
    cursor = await conn.execute(
        f"""
        SELECT {_WORK_COLUMNS}
        FROM works
        WHERE (? IS NULL OR updated_at >= ?)
          AND (? IS NULL OR work_id > ?)
        ORDER BY work_id
        LIMIT ?;
        """,
        (since, since, after_work_id, after_work_id, int(limit)),
    )
    rows = await cursor.fetchall()
    return [_row_to_work(r) for r in rows]


async def count_works(conn: aiosqlite.Connection, *, since: float | None = None) -> int:
    cursor = await conn.execute(
        "SELECT COUNT(*) AS c FROM works WHERE (? IS NULL OR updated_at >= ?);",
        (since, since),
    )
    row = await cursor.fetchone()
    return int(row["c"]) if row else 0


async def delete_work(conn: aiosqlite.Connection, work_id: str) -> bool:
    cursor = await conn.execute("DELETE FROM works WHERE work_id = ?;", (work_id,))
    return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Match keys
# ---------------------------------------------------------------------------


async def get_work_keys(conn: aiosqlite.Connection, work_id: str) -> list[str]:
    cursor = await conn.execute(
        "SELECT match_key FROM work_match_keys WHERE work_id = ? ORDER BY match_key;",
        (work_id,),
    )
    rows = await cursor.fetchall()
    return [r["match_key"] for r in rows]


async def replace_work_keys(
    conn: aiosqlite.Connection, work_id: str, match_keys: Sequence[str]
) -> list[str]:
    """Replace the keys of one work. Returns the keys it had before."""
    previous = await get_work_keys(conn, work_id)
    await conn.execute("DELETE FROM work_match_keys WHERE work_id = ?;", (work_id,))
    await conn.executemany(
        "INSERT OR IGNORE INTO work_match_keys (work_id, match_key) VALUES (?, ?);",
        [(work_id, key) for key in match_keys],
    )
    return previous


async def list_key_members(conn: aiosqlite.Connection, match_key: str) -> list[str]:
    cursor = await conn.execute(
        "SELECT work_id FROM work_match_keys WHERE match_key = ? ORDER BY work_id;",
        (match_key,),
    )
    rows = await cursor.fetchall()
    return [r["work_id"] for r in rows]


async def prune_orphan_keys(conn: aiosqlite.Connection) -> list[str]:
    """Drop keys of works that no longer exist. Returns the affected keys."""
    cursor = await conn.execute(
        """
        SELECT DISTINCT match_key
        FROM work_match_keys
        WHERE work_id NOT IN (SELECT work_id FROM works)
        ORDER BY match_key;
        """
    )
    rows = await cursor.fetchall()
    await conn.execute(
        "DELETE FROM work_match_keys WHERE work_id NOT IN (SELECT work_id FROM works);"
    )
    return [r["match_key"] for r in rows]
