from __future__ import annotations

from datetime import datetime
from typing import Any

from ...common import parse_dt, to_iso, utc_now
from ..models import SummarySpineRecord


def _spine_from_row(row: Any) -> SummarySpineRecord:
    return SummarySpineRecord(
        owner_id=str(row["owner_id"]),
        conversation_id=str(row["conversation_id"]),
        version=int(row["version"]),
        content=str(row["content"]),
        message_count=int(row["message_count"] or 0),
        created_at=parse_dt(row["created_at"]) or utc_now(),
    )


class MemorySummarySpineMixin:
    async def get_latest_summary_spine(
        self,
        owner_id: str,
        conversation_id: str = "default",
    ) -> SummarySpineRecord | None:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT owner_id, conversation_id, version, content, message_count, created_at
                FROM summary_spine
                WHERE owner_id = ? AND conversation_id = ?
                ORDER BY version DESC
                LIMIT 1
                """,
                (owner_id, conversation_id),
            ) as cursor:
                row = await cursor.fetchone()
        return _spine_from_row(row) if row else None

    async def create_summary_spine_version(
        self,
        owner_id: str,
        content: str,
        *,
        message_count: int,
        conversation_id: str = "default",
        now: datetime | None = None,
    ) -> SummarySpineRecord:
        stamp = to_iso(now or utc_now())
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    "SELECT COALESCE(MAX(version), 0) FROM summary_spine WHERE owner_id = ? AND conversation_id = ?",
                    (owner_id, conversation_id),
                ) as cursor:
                    row = await cursor.fetchone()
                version = int(row[0]) + 1 if row else 1
                await db.execute(
                    """
                    INSERT INTO summary_spine (owner_id, conversation_id, version, content, message_count, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (owner_id, conversation_id, version, content, max(0, int(message_count)), stamp),
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return SummarySpineRecord(
            owner_id=owner_id,
            conversation_id=conversation_id,
            version=version,
            content=content,
            message_count=max(0, int(message_count)),
            created_at=parse_dt(stamp) or utc_now(),
        )

    async def list_summary_spine_versions(
        self,
        owner_id: str,
        conversation_id: str = "default",
        *,
        limit: int = 10,
    ) -> list[SummarySpineRecord]:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT owner_id, conversation_id, version, content, message_count, created_at
                FROM summary_spine
                WHERE owner_id = ? AND conversation_id = ?
                ORDER BY version DESC
                LIMIT ?
                """,
                (owner_id, conversation_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_spine_from_row(row) for row in rows]
