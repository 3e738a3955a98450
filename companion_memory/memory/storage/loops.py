from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from ...common import parse_dt, to_iso, utc_now
from ..models import LOOP_COMPLETED, LOOP_PENDING, LoopRecord
from .utils import new_id

_LOOP_COLUMNS = (
    "loop_id, owner_id, persona_id, content, kind, status, dedupe_key, resolution, created_at, completed_at"
)


def _loop_from_row(row: Any) -> LoopRecord:
    return LoopRecord(
        loop_id=str(row["loop_id"]),
        owner_id=str(row["owner_id"]),
        persona_id=str(row["persona_id"]),
        content=str(row["content"]),
        kind=str(row["kind"]),
        status=str(row["status"]),
        dedupe_key=str(row["dedupe_key"] or ""),
        created_at=parse_dt(row["created_at"]) or utc_now(),
        completed_at=parse_dt(row["completed_at"]),
        resolution=row["resolution"],
    )


class MemoryLoopsMixin:
    async def insert_loop(
        self,
        *,
        owner_id: str,
        persona_id: str,
        content: str,
        kind: str,
        dedupe_key: str,
        now: datetime | None = None,
    ) -> LoopRecord | None:
        """Write a PENDING loop; returns ``None`` when an equivalent pending loop already exists."""
        loop_id = new_id()
        stamp = to_iso(now or utc_now())
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO loops (
                    loop_id, owner_id, persona_id, content, kind, status,
                    dedupe_key, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 'PENDING', ?, ?, ?)
                """,
                (loop_id, owner_id, persona_id, content, kind, dedupe_key, stamp, stamp),
            )
            inserted = cursor.rowcount == 1
            await db.commit()
            if not inserted:
                return None
            async with db.execute(f"SELECT {_LOOP_COLUMNS} FROM loops WHERE loop_id = ?", (loop_id,)) as cur:
                row = await cur.fetchone()
        return _loop_from_row(row) if row else None

    async def list_loops(
        self,
        owner_id: str,
        persona_id: str,
        *,
        status: str | None = None,
        kinds: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[LoopRecord]:
        sql = f"SELECT {_LOOP_COLUMNS} FROM loops WHERE owner_id = ? AND persona_id = ?"
        args: list[Any] = [owner_id, persona_id]
        if status:
            sql += " AND status = ?"
            args.append(status)
        if kinds:
            sql += f" AND kind IN ({','.join('?' for _ in kinds)})"
            args.extend(kinds)
        sql += " ORDER BY created_at DESC, loop_id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(max(1, int(limit)))
        async with self._connect() as db:
            async with db.execute(sql, args) as cursor:
                rows = await cursor.fetchall()
        return [_loop_from_row(row) for row in rows]

    async def list_pending_loops(self, owner_id: str, persona_id: str, *, kind: str | None = None) -> list[LoopRecord]:
        return await self.list_loops(owner_id, persona_id, status=LOOP_PENDING, kinds=[kind] if kind else None)

    async def complete_loop(
        self,
        loop_id: str,
        *,
        completed_at: datetime | None = None,
        resolution: str = "done",
    ) -> bool:
        stamp = to_iso(completed_at or utc_now())
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE loops
                SET status = ?, completed_at = ?, updated_at = ?, resolution = ?
                WHERE loop_id = ? AND status = 'PENDING'
                """,
                (LOOP_COMPLETED, stamp, stamp, resolution, loop_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def list_completed_loops_since(
        self,
        owner_id: str,
        persona_id: str,
        *,
        kind: str,
        since: datetime,
        limit: int = 20,
    ) -> list[LoopRecord]:
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_LOOP_COLUMNS}
                FROM loops
                WHERE owner_id = ? AND persona_id = ? AND kind = ?
                  AND status = 'COMPLETED' AND completed_at >= ?
                  AND COALESCE(resolution, 'done') = 'done'
                ORDER BY completed_at DESC
                LIMIT ?
                """,
                (owner_id, persona_id, kind, to_iso(since), max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_loop_from_row(row) for row in rows]

    async def list_loop_scopes(self, owner_id: str) -> list[str]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT DISTINCT persona_id FROM loops WHERE owner_id = ? AND status = 'PENDING'",
                (owner_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [str(row["persona_id"]) for row in rows]
