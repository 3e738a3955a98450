from __future__ import annotations

from datetime import datetime
from typing import Any

from ...common import parse_dt, to_iso, utc_now
from ..models import MessageRecord

_MESSAGE_COLUMNS = "message_id, owner_id, persona_id, role, content, created_at"


def _message_from_row(row: Any) -> MessageRecord:
    return MessageRecord(
        message_id=int(row["message_id"]),
        owner_id=str(row["owner_id"]),
        persona_id=str(row["persona_id"]),
        role=str(row["role"]),
        content=str(row["content"]),
        created_at=parse_dt(row["created_at"]) or utc_now(),
    )


class MemoryMessagesMixin:
    async def save_message(
        self,
        owner_id: str,
        persona_id: str,
        role: str,
        content: str,
        *,
        created_at: datetime | None = None,
    ) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO messages (owner_id, persona_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (owner_id, persona_id, role, content, to_iso(created_at or utc_now())),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_recent_messages(
        self,
        owner_id: str,
        persona_id: str,
        *,
        role: str | None = None,
        since: datetime | None = None,
        limit: int = 20,
    ) -> list[MessageRecord]:
        """Most recent messages first."""
        sql = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE owner_id = ? AND persona_id = ?"
        args: list[Any] = [owner_id, persona_id]
        if role:
            sql += " AND role = ?"
            args.append(role)
        if since is not None:
            sql += " AND created_at >= ?"
            args.append(to_iso(since))
        sql += " ORDER BY created_at DESC, message_id DESC LIMIT ?"
        args.append(max(1, int(limit)))
        async with self._connect() as db:
            async with db.execute(sql, args) as cursor:
                rows = await cursor.fetchall()
        return [_message_from_row(row) for row in rows]

    async def get_messages_between(
        self,
        owner_id: str,
        persona_id: str,
        *,
        start: datetime,
        end: datetime | None = None,
        role: str | None = None,
        limit: int | None = None,
    ) -> list[MessageRecord]:
        """Messages in ``[start, end]`` in chronological order; with ``limit`` the latest ones are kept."""
        sql = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE owner_id = ? AND persona_id = ? AND created_at >= ?"
        args: list[Any] = [owner_id, persona_id, to_iso(start)]
        if end is not None:
            sql += " AND created_at <= ?"
            args.append(to_iso(end))
        if role:
            sql += " AND role = ?"
            args.append(role)
        sql += " ORDER BY created_at DESC, message_id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(max(1, int(limit)))
        async with self._connect() as db:
            async with db.execute(sql, args) as cursor:
                rows = await cursor.fetchall()
        return [_message_from_row(row) for row in reversed(rows)]

    async def get_last_message_at(
        self,
        owner_id: str,
        persona_id: str,
        *,
        role: str | None = "user",
        since: datetime | None = None,
    ) -> datetime | None:
        sql = "SELECT MAX(created_at) FROM messages WHERE owner_id = ? AND persona_id = ?"
        args: list[Any] = [owner_id, persona_id]
        if role:
            sql += " AND role = ?"
            args.append(role)
        if since is not None:
            sql += " AND created_at >= ?"
            args.append(to_iso(since))
        async with self._connect() as db:
            async with db.execute(sql, args) as cursor:
                row = await cursor.fetchone()
        return parse_dt(row[0]) if row and row[0] else None

    async def count_messages(self, owner_id: str, persona_id: str, *, since: datetime | None = None) -> int:
        sql = "SELECT COUNT(*) FROM messages WHERE owner_id = ? AND persona_id = ?"
        args: list[Any] = [owner_id, persona_id]
        if since is not None:
            sql += " AND created_at >= ?"
            args.append(to_iso(since))
        async with self._connect() as db:
            async with db.execute(sql, args) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
