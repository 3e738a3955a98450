from __future__ import annotations

from datetime import datetime
from typing import Any

from ...common import parse_dt, to_iso, utc_now
from ..models import SessionRecord, SessionStateRecord, SessionSummaryRecord
from .utils import dump_json, load_json_dict, new_id

_SESSION_COLUMNS = "session_id, owner_id, persona_id, started_at, last_activity_at, ended_at, turn_count"


def _session_from_row(row: Any) -> SessionRecord:
    started_at = parse_dt(row["started_at"]) or utc_now()
    return SessionRecord(
        session_id=str(row["session_id"]),
        owner_id=str(row["owner_id"]),
        persona_id=str(row["persona_id"]),
        started_at=started_at,
        last_activity_at=parse_dt(row["last_activity_at"]) or started_at,
        ended_at=parse_dt(row["ended_at"]),
        turn_count=int(row["turn_count"] or 0),
    )


def _summary_from_row(row: Any) -> SessionSummaryRecord:
    created_at = parse_dt(row["created_at"]) or utc_now()
    return SessionSummaryRecord(
        session_id=str(row["session_id"]),
        owner_id=str(row["owner_id"]),
        persona_id=str(row["persona_id"]),
        summary=load_json_dict(row["summary"]),
        metadata=load_json_dict(row["metadata"]),
        created_at=created_at,
        updated_at=parse_dt(row["updated_at"]) or created_at,
    )


class MemorySessionsMixin:
    async def get_open_session(self, owner_id: str, persona_id: str) -> SessionRecord | None:
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM sessions
                WHERE owner_id = ? AND persona_id = ? AND ended_at IS NULL
                ORDER BY last_activity_at DESC
                LIMIT 1
                """,
                (owner_id, persona_id),
            ) as cursor:
                row = await cursor.fetchone()
        return _session_from_row(row) if row else None

    async def get_session(self, session_id: str) -> SessionRecord | None:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return _session_from_row(row) if row else None

    async def create_session(self, owner_id: str, persona_id: str, *, now: datetime | None = None) -> SessionRecord:
        session_id = new_id()
        stamp = to_iso(now or utc_now())
        async with self._connect() as db:
            await db.execute(
                f"""
                INSERT INTO sessions ({_SESSION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, NULL, 1)
                """,
                (session_id, owner_id, persona_id, stamp, stamp),
            )
            await db.commit()
        session = await self.get_session(session_id)
        if session is None:
            raise RuntimeError(f"session {session_id} vanished after insert")
        return session

    async def touch_session(self, session_id: str, *, now: datetime | None = None) -> SessionRecord | None:
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE sessions
                SET last_activity_at = ?, turn_count = turn_count + 1
                WHERE session_id = ? AND ended_at IS NULL
                """,
                (to_iso(now or utc_now()), session_id),
            )
            await db.commit()
        return await self.get_session(session_id)

    async def end_session(self, session_id: str, *, ended_at: datetime) -> SessionRecord | None:
        """Close an open session; returns ``None`` if another caller closed it first."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE sessions SET ended_at = ? WHERE session_id = ? AND ended_at IS NULL",
                (to_iso(ended_at), session_id),
            )
            await db.commit()
            if cursor.rowcount != 1:
                return None
        return await self.get_session(session_id)

    async def upsert_session_summary(
        self,
        *,
        session_id: str,
        owner_id: str,
        persona_id: str,
        summary: dict[str, Any],
        metadata: dict[str, Any],
        now: datetime | None = None,
    ) -> SessionSummaryRecord:
        stamp = to_iso(now or utc_now())
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO session_summaries (
                    session_id, owner_id, persona_id, summary, metadata, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    summary = excluded.summary,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                (session_id, owner_id, persona_id, dump_json(summary), dump_json(metadata), stamp, stamp),
            )
            await db.commit()
        record = await self.get_session_summary(session_id)
        if record is None:
            raise RuntimeError(f"session summary {session_id} vanished after upsert")
        return record

    async def get_session_summary(self, session_id: str) -> SessionSummaryRecord | None:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM session_summaries WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return _summary_from_row(row) if row else None

    async def get_latest_session_summary(self, owner_id: str, persona_id: str) -> SessionSummaryRecord | None:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT *
                FROM session_summaries
                WHERE owner_id = ? AND persona_id = ?
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (owner_id, persona_id),
            ) as cursor:
                row = await cursor.fetchone()
        return _summary_from_row(row) if row else None

    async def get_session_state(self, owner_id: str, persona_id: str) -> SessionStateRecord | None:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT owner_id, persona_id, rolling_summary, state, updated_at
                FROM session_state
                WHERE owner_id = ? AND persona_id = ?
                """,
                (owner_id, persona_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return SessionStateRecord(
            owner_id=str(row["owner_id"]),
            persona_id=str(row["persona_id"]),
            rolling_summary=str(row["rolling_summary"] or ""),
            state=load_json_dict(row["state"]),
            updated_at=parse_dt(row["updated_at"]) or utc_now(),
        )

    async def upsert_session_state(
        self,
        owner_id: str,
        persona_id: str,
        *,
        state: dict[str, Any],
        rolling_summary: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Point upsert keyed by ``(owner_id, persona_id)``; ``rolling_summary=None`` keeps the stored text."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO session_state (owner_id, persona_id, rolling_summary, state, updated_at)
                VALUES (?, ?, COALESCE(?, ''), ?, ?)
                ON CONFLICT(owner_id, persona_id) DO UPDATE SET
                    rolling_summary = COALESCE(?, session_state.rolling_summary),
                    state = excluded.state,
                    updated_at = excluded.updated_at
                """,
                (
                    owner_id,
                    persona_id,
                    rolling_summary,
                    dump_json(state),
                    to_iso(now or utc_now()),
                    rolling_summary,
                ),
            )
            await db.commit()
