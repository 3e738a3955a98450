from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from ..common import parse_dt, to_iso, utc_now
from ..memory.models import SessionRecord, SessionSummaryRecord
from ..memory.state import SessionStateService, get_path, set_path
from ..services.continuity_client import RequestTrace
from .summarizer import SessionSummarizer

logger = logging.getLogger("companion_memory")

INGEST_MESSAGE_LIMIT = 200
INGEST_FAILURE_WINDOW = timedelta(hours=24)


class SessionLifecycleManager:
    """Active/closed session state machine; closing a session fires ingest and summary work."""

    def __init__(
        self,
        store: Any,
        state_service: SessionStateService,
        *,
        summarizer: SessionSummarizer | None = None,
        continuity: Any = None,
        supervisor: Any = None,
        active_window_seconds: int = 300,
        summary_enabled: bool = True,
        ingest_enabled: bool = False,
    ) -> None:
        self.store = store
        self.state_service = state_service
        self.summarizer = summarizer
        self.continuity = continuity
        self.supervisor = supervisor
        self.active_window = timedelta(seconds=max(1, int(active_window_seconds)))
        self.summary_enabled = bool(summary_enabled)
        self.ingest_enabled = bool(ingest_enabled)
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, owner_id: str, persona_id: str) -> asyncio.Lock:
        key = f"{owner_id}:{persona_id}"
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _dispatch(self, name: str, factory: Callable[[], Awaitable[Any]]) -> None:
        if self.supervisor is not None:
            self.supervisor.submit(name, factory)
            return
        try:
            await factory()
        except Exception:
            logger.exception("Session side effect failed: %s", name)

    async def close_stale_session_if_any(
        self,
        owner_id: str,
        persona_id: str,
        *,
        now: datetime | None = None,
    ) -> SessionRecord | None:
        """Close the open session once the user has been idle for the active window.

        The session ends at the last user message, not at ``now``, so idle time is not counted.
        """
        now = now or utc_now()
        session = await self.store.get_open_session(owner_id, persona_id)
        if session is None:
            return None
        last_user_at = await self.store.get_last_message_at(
            owner_id,
            persona_id,
            role="user",
            since=session.started_at,
        )
        last_activity = last_user_at or session.last_activity_at
        if now - last_activity < self.active_window:
            return None

        closed = await self.store.end_session(session.session_id, ended_at=last_activity)
        if closed is None:
            return None
        logger.info(
            "Session closed: session=%s owner=%s persona=%s turns=%s",
            closed.session_id,
            owner_id,
            persona_id,
            closed.turn_count,
        )
        if self.ingest_enabled and self.continuity is not None:
            await self._dispatch("session_ingest", lambda: self.ingest_session(closed, now=now))
        if self.summary_enabled and self.summarizer is not None:
            await self._dispatch("session_summary", lambda: self.summarizer.summarize_session(closed, now=now))
        return closed

    async def ensure_active_session(
        self,
        owner_id: str,
        persona_id: str,
        *,
        now: datetime | None = None,
    ) -> SessionRecord:
        now = now or utc_now()
        async with self._get_lock(owner_id, persona_id):
            await self.close_stale_session_if_any(owner_id, persona_id, now=now)
            session = await self.store.get_open_session(owner_id, persona_id)
            if session is not None:
                touched = await self.store.touch_session(session.session_id, now=now)
                return touched or session
            session = await self.store.create_session(owner_id, persona_id, now=now)
            logger.info("Session started: session=%s owner=%s persona=%s", session.session_id, owner_id, persona_id)
            return session

    async def get_latest_session_summary(self, owner_id: str, persona_id: str) -> SessionSummaryRecord | None:
        return await self.store.get_latest_session_summary(owner_id, persona_id)

    async def ingest_session(self, session: SessionRecord, *, now: datetime | None = None) -> RequestTrace:
        now = now or utc_now()
        messages = await self.store.get_messages_between(
            session.owner_id,
            session.persona_id,
            start=session.started_at,
            end=session.ended_at or now,
            limit=INGEST_MESSAGE_LIMIT,
        )
        payload = [
            {"role": message.role, "content": message.content, "createdAt": to_iso(message.created_at)}
            for message in messages
        ]
        window = {
            "userId": session.owner_id,
            "personaId": session.persona_id,
            "startedAt": to_iso(session.started_at),
            "endedAt": to_iso(session.ended_at or now),
        }
        trace = await self.continuity.ingest(session.session_id, payload, window)
        await self._record_ingest_trace(session, trace, now)
        return trace

    async def _record_ingest_trace(self, session: SessionRecord, trace: RequestTrace, now: datetime) -> None:
        cutoff = now - INGEST_FAILURE_WINDOW
        failure_count = 0

        def mutate(state: dict[str, Any]) -> None:
            nonlocal failure_count
            raw = get_path(state, "diagnostics.continuityIngest.failures", [])
            failures = [item for item in raw if isinstance(item, str) and (parse_dt(item) or cutoff) > cutoff]
            if not trace.ok:
                failures.append(to_iso(now))
            failure_count = len(failures)
            set_path(state, "diagnostics.continuityIngest.failures", failures)
            set_path(
                state,
                "diagnostics.continuityIngest.lastTrace",
                {**trace.to_dict(), "sessionId": session.session_id, "at": to_iso(now)},
            )

        await self.state_service.update(session.owner_id, session.persona_id, mutate, now=now)
        if failure_count > 0:
            logger.warning(
                "Continuity ingest failures in last 24h: owner=%s persona=%s count=%s",
                session.owner_id,
                session.persona_id,
                failure_count,
            )
