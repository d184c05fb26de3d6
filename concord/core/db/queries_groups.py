"""
Match-group queries extracted from `concord.core.catalog_db.CatalogDb`.

Design:
- Functions take an open `aiosqlite.Connection` and return dataclasses/dicts.
- A group's identity (`match_key`) never changes; its totals and membership
  are rewritten on every scan that evaluates it.
"""

from __future__ import annotations

from collections.abc import Sequence

import aiosqlite

from concord.core.db.models import GroupMemberRow, MatchGroupRow

_GROUP_COLUMNS = """
    id, match_key, canonical_title, canonical_iswc, member_count,
    total_claimed_ownership, last_job_id, updated_at
"""


def _row_to_group(row: aiosqlite.Row) -> MatchGroupRow:
    return MatchGroupRow(
        id=int(row["id"]),
        match_key=row["match_key"],
        canonical_title=row["canonical_title"],
        canonical_iswc=row["canonical_iswc"],
        member_count=int(row["member_count"]),
        total_claimed_ownership=float(row["total_claimed_ownership"]),
        last_job_id=int(row["last_job_id"]) if row["last_job_id"] is not None else None,
        updated_at=float(row["updated_at"]),
    )


async def get_group(conn: aiosqlite.Connection, group_id: int) -> MatchGroupRow | None:
    cursor = await conn.execute(
        f"SELECT {_GROUP_COLUMNS} FROM match_groups WHERE id = ?;",
        (int(group_id),),
    )
    row = await cursor.fetchone()
    return _row_to_group(row) if row is not None else None


async def get_group_by_key(conn: aiosqlite.Connection, match_key: str) -> MatchGroupRow | None:
    cursor = await conn.execute(
        f"SELECT {_GROUP_COLUMNS} FROM match_groups WHERE match_key = ?;",
        (match_key,),
    )
    row = await cursor.fetchone()
    return _row_to_group(row) if row is not None else None


async def upsert_group(
    conn: aiosqlite.Connection,
    *,
    match_key: str,
    canonical_title: str,
    canonical_iswc: str | None,
    member_count: int,
    total_claimed_ownership: float,
    job_id: int | None,
    now: float,
) -> int:
    """Insert or refresh a group by its key. Returns the group id."""
    await conn.execute(
        """
        INSERT INTO match_groups(
            match_key, canonical_title, canonical_iswc, member_count,
            total_claimed_ownership, last_job_id, updated_at
        ) VALUES (
            :match_key, :canonical_title, :canonical_iswc, :member_count,
            :total, :job_id, :now
        )
        ON CONFLICT(match_key) DO UPDATE SET
            canonical_title         = excluded.canonical_title,
            canonical_iswc          = excluded.canonical_iswc,
            member_count            = excluded.member_count,
            total_claimed_ownership = excluded.total_claimed_ownership,
            last_job_id             = excluded.last_job_id,
            updated_at              = excluded.updated_at
        """,
        {
            "match_key": match_key,
            "canonical_title": canonical_title,
            "canonical_iswc": canonical_iswc,
            "member_count": int(member_count),
            "total": float(total_claimed_ownership),
            "job_id": job_id,
            "now": now,
        },
    )
    cursor = await conn.execute("SELECT id FROM match_groups WHERE match_key = ?;", (match_key,))
    row = await cursor.fetchone()
    if row is None:
        raise RuntimeError("Upsert failed: match group row not found after insert/update.")
    return int(row["id"])


async def replace_group_members(
    conn: aiosqlite.Connection,
    group_id: int,
    members: Sequence[tuple[str, str, float]],
) -> None:
    """Replace membership with `(work_id, account_id, claimed_ownership)` tuples."""
    await conn.execute("DELETE FROM match_group_members WHERE group_id = ?;", (int(group_id),))
    await conn.executemany(
        """
        INSERT INTO match_group_members (group_id, work_id, account_id, claimed_ownership)
        VALUES (?, ?, ?, ?)
        """,
        [(int(group_id), w, a, float(c)) for w, a, c in members],
    )


async def list_group_members(conn: aiosqlite.Connection, group_id: int) -> list[GroupMemberRow]:
    cursor = await conn.execute(
        """
        SELECT m.group_id, m.work_id, m.account_id, m.claimed_ownership, w.title, w.iswc
        FROM match_group_members m
        LEFT JOIN works w ON w.work_id = m.work_id
        WHERE m.group_id = ?
        ORDER BY m.work_id;
        """,
        (int(group_id),),
    )
    rows = await cursor.fetchall()
    return [
        GroupMemberRow(
            group_id=int(r["group_id"]),
            work_id=r["work_id"],
            account_id=r["account_id"],
            title=r["title"],
            iswc=r["iswc"],
            claimed_ownership=float(r["claimed_ownership"]),
        )
        for r in rows
    ]


async def reset_group(
    conn: aiosqlite.Connection, match_key: str, *, job_id: int | None, now: float
) -> bool:
    """Empty a group that no longer has enough members. Returns True if it existed."""
    group = await get_group_by_key(conn, match_key)
    if group is None:
        return False
    await conn.execute("DELETE FROM match_group_members WHERE group_id = ?;", (group.id,))
    await conn.execute(
        """
        UPDATE match_groups
        SET member_count = 0, total_claimed_ownership = 0, last_job_id = ?, updated_at = ?
        WHERE id = ?;
        """,
        (job_id, now, group.id),
    )
    return True


async def reset_stale_groups(conn: aiosqlite.Connection, *, job_id: int, now: float) -> int:
    """Empty every non-empty group the given job did not evaluate."""
    cursor = await conn.execute(
        """
        SELECT id FROM match_groups
        WHERE member_count > 0 AND (last_job_id IS NULL OR last_job_id != ?);
        """,
        (int(job_id),),
    )
    ids = [int(r["id"]) for r in await cursor.fetchall()]
    for group_id in ids:
        await conn.execute("DELETE FROM match_group_members WHERE group_id = ?;", (group_id,))
    await conn.executemany(
        """
        UPDATE match_groups
        SET member_count = 0, total_claimed_ownership = 0, last_job_id = ?, updated_at = ?
        WHERE id = ?;
        """,
        [(int(job_id), now, group_id) for group_id in ids],
    )
    return len(ids)


async def count_groups(conn: aiosqlite.Connection) -> int:
    """Number of groups that currently have members."""
    cursor = await conn.execute("SELECT COUNT(*) AS c FROM match_groups WHERE member_count > 0;")
    row = await cursor.fetchone()
    return int(row["c"]) if row else 0
