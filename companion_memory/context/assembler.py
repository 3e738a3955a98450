from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from ..common import collapse_spaces, normalize_content, to_iso, truncate, utc_now
from ..memory.models import MEMORY_TYPES, LoopRecord, MemoryRecord, SessionRecord
from ..memory.service import MemoryService
from ..memory.state import SessionStateService
from .payload import ContextMemory, ContextPayload

logger = logging.getLogger("companion_memory")

FOUNDATION_CAP = 20
RELEVANT_CAP = 8
RELEVANT_TYPE_CAPS = {"PROFILE": 2, "PEOPLE": 3, "PROJECT": 3}
SEARCH_LIMIT = 24
ENTITY_CARD_CAP = 5
ENTITY_CARD_FACTS = 3
LOOP_CAPS = {"COMMITMENT": 5, "THREAD": 3, "FRICTION": 3, "HABIT": 3}
RECENT_WINS_WINDOW = timedelta(hours=48)
RECENT_WINS_CAP = 5
ROLLING_SUMMARY_CHARS = 600
SESSION_SUMMARY_CHARS = 700
RECENT_MESSAGE_LIMIT = 12
RECENT_MESSAGE_CHARS = 800
TRANSCRIPT_QUERY_CHARS = 2000

PLACEHOLDER_RE = re.compile(
    r"^\s*(?:none|n/?a|null|undefined|tbd|-+|\.+|\(none\)|\(empty\)|no summary(?: yet)?|"
    r"nothing (?:to summarize|yet))\s*\.?\s*$",
    re.IGNORECASE,
)
LEGACY_WIN_RE = re.compile(r"^\s*(?:\[(?:win|legacy|migrated)\]|win:)", re.IGNORECASE)


def is_placeholder(text: str) -> bool:
    return not collapse_spaces(text) or PLACEHOLDER_RE.match(text) is not None


def cap_relevant(memories: Iterable[ContextMemory], *, exclude_content: Iterable[str] = ()) -> list[ContextMemory]:
    """Dedupe by normalized content and apply the per-type and overall caps, keeping input order."""
    seen = {normalize_content(text) for text in exclude_content}
    per_type: dict[str, int] = {}
    selected: list[ContextMemory] = []
    for memory in memories:
        cap = RELEVANT_TYPE_CAPS.get(memory.memory_type)
        if cap is None:
            continue
        key = normalize_content(memory.content)
        if not key or key in seen:
            continue
        if per_type.get(memory.memory_type, 0) >= cap:
            continue
        seen.add(key)
        per_type[memory.memory_type] = per_type.get(memory.memory_type, 0) + 1
        selected.append(memory)
        if len(selected) >= RELEVANT_CAP:
            break
    return selected


def cap_loop_texts(loops: Sequence[LoopRecord], kind: str) -> list[str]:
    # loops arrive newest first, so the newest text of a duplicate wins
    seen: set[str] = set()
    texts: list[str] = []
    for loop in loops:
        if loop.kind != kind:
            continue
        key = normalize_content(loop.content)
        if not key or key in seen:
            continue
        seen.add(key)
        texts.append(loop.content)
        if len(texts) >= LOOP_CAPS[kind]:
            break
    return texts


def _unique_texts(values: Iterable[Any], limit: int) -> list[str]:
    seen: set[str] = set()
    texts: list[str] = []
    for value in values:
        if isinstance(value, dict):
            value = value.get("text") or value.get("content") or value.get("label")
        if not isinstance(value, str):
            continue
        text = collapse_spaces(value)
        key = normalize_content(text)
        if not key or key in seen:
            continue
        seen.add(key)
        texts.append(text)
        if len(texts) >= limit:
            break
    return texts


def format_session_summary(summary: dict[str, Any]) -> str:
    one_liner = collapse_spaces(str(summary.get("one_liner", "") or ""))
    if is_placeholder(one_liner):
        return ""
    lines = [one_liner]
    open_loops = [str(item) for item in summary.get("open_loops") or [] if isinstance(item, str) and item.strip()]
    if open_loops:
        lines.append("Open: " + "; ".join(open_loops))
    commitments = [str(item) for item in summary.get("commitments") or [] if isinstance(item, str) and item.strip()]
    if commitments:
        lines.append("They said they would: " + "; ".join(commitments))
    tone = collapse_spaces(str(summary.get("tone", "") or ""))
    if tone:
        lines.append(f"Tone: {tone}")
    return truncate("\n".join(lines), SESSION_SUMMARY_CHARS)


class ContextAssembler:
    """Builds the bounded per-turn context, remotely when enabled and locally otherwise."""

    def __init__(
        self,
        store: Any,
        memory_service: MemoryService,
        state_service: SessionStateService,
        *,
        continuity: Any = None,
        remote_enabled: bool = False,
        remote_timeout_seconds: float = 3.0,
    ) -> None:
        self.store = store
        self.memory_service = memory_service
        self.state_service = state_service
        self.continuity = continuity
        self.remote_enabled = bool(remote_enabled)
        self.remote_timeout_seconds = max(0.1, float(remote_timeout_seconds))

    async def detect_session_start(self, owner_id: str, persona_id: str, session: SessionRecord | None) -> bool:
        since = session.started_at if session is not None else None
        return await self.store.count_messages(owner_id, persona_id, since=since) == 0

    async def build_context(
        self,
        owner_id: str,
        persona_id: str,
        transcript: str,
        *,
        session_id: str | None = None,
        is_session_start: bool | None = None,
        now: datetime | None = None,
    ) -> ContextPayload:
        now = now or utc_now()
        session = await self.store.get_session(session_id) if session_id else None
        if is_session_start is None:
            is_session_start = await self.detect_session_start(owner_id, persona_id, session)

        fallback_reason = ""
        if self.remote_enabled and self.continuity is not None:
            try:
                remote = await asyncio.wait_for(
                    self.build_remote(owner_id, persona_id, transcript, session, is_session_start, now),
                    timeout=self.remote_timeout_seconds,
                )
            except asyncio.TimeoutError:
                remote = None
                fallback_reason = "timeout"
            except Exception as exc:
                remote = None
                fallback_reason = f"error: {str(exc)[:120]}"
            else:
                if remote is None:
                    fallback_reason = "empty"
            if remote is not None:
                return remote
            logger.warning("Remote context unavailable, using local path: reason=%s", fallback_reason)

        payload = await self.build_local(owner_id, persona_id, transcript, session, is_session_start, now)
        payload.fallback_reason = fallback_reason
        return payload

    async def _foundation(self, owner_id: str, persona_id: str) -> list[MemoryRecord]:
        memories = await self.store.list_memories(owner_id, persona_id=persona_id, types=MEMORY_TYPES)
        return [memory for memory in memories if memory.metadata.pinned][:FOUNDATION_CAP]

    async def _entity_cards(
        self,
        owner_id: str,
        persona_id: str,
        relevant: Sequence[MemoryRecord],
        exclude_ids: set[str],
    ) -> list[str]:
        refs: list[str] = []
        for memory in relevant:
            for ref in memory.metadata.entity_refs:
                if ref not in refs:
                    refs.append(ref)
        if not refs:
            return []

        pool = await self.store.list_memories(owner_id, persona_id=persona_id, types=MEMORY_TYPES, newest_first=True)
        cards: list[str] = []
        for ref in refs:
            facts: list[str] = []
            seen: set[str] = set()
            for memory in pool:
                meta = memory.metadata
                if memory.memory_id in exclude_ids or ref not in meta.entity_refs:
                    continue
                if not (meta.pinned or meta.importance >= 2):
                    continue
                key = normalize_content(memory.content)
                if key in seen:
                    continue
                seen.add(key)
                facts.append(memory.content)
                if len(facts) >= ENTITY_CARD_FACTS:
                    break
            if facts:
                cards.append(f"[{ref}]: " + "; ".join(facts))
            if len(cards) >= ENTITY_CARD_CAP:
                break
        return cards

    async def _summaries(self, owner_id: str, persona_id: str, session: SessionRecord | None) -> tuple[str, str]:
        record = await self.state_service.get(owner_id, persona_id)
        rolling = ""
        if session is not None and record.state.get("rollingSummarySessionId") == session.session_id:
            if not is_placeholder(record.rolling_summary):
                rolling = truncate(collapse_spaces(record.rolling_summary), ROLLING_SUMMARY_CHARS)
        latest = await self.store.get_latest_session_summary(owner_id, persona_id)
        session_summary = ""
        if latest is not None and (session is None or latest.session_id != session.session_id):
            session_summary = format_session_summary(latest.summary)
        return rolling, session_summary

    async def _recent_messages(
        self,
        owner_id: str,
        persona_id: str,
        session: SessionRecord | None,
    ) -> list[dict[str, Any]]:
        if session is None:
            return []
        messages = await self.store.get_messages_between(
            owner_id,
            persona_id,
            start=session.started_at,
            limit=RECENT_MESSAGE_LIMIT,
        )
        return [
            {
                "role": message.role,
                "content": message.content[:RECENT_MESSAGE_CHARS],
                "createdAt": to_iso(message.created_at),
            }
            for message in messages
        ]

    async def _recent_wins(self, owner_id: str, persona_id: str, now: datetime) -> list[str]:
        completed = await self.store.list_completed_loops_since(
            owner_id,
            persona_id,
            kind="COMMITMENT",
            since=now - RECENT_WINS_WINDOW,
        )
        wins = [loop.content for loop in completed if not LEGACY_WIN_RE.match(loop.content)]
        return _unique_texts(wins, RECENT_WINS_CAP)

    async def build_local(
        self,
        owner_id: str,
        persona_id: str,
        transcript: str,
        session: SessionRecord | None,
        is_session_start: bool,
        now: datetime,
    ) -> ContextPayload:
        foundation = await self._foundation(owner_id, persona_id)
        foundation_ids = {memory.memory_id for memory in foundation}

        query = collapse_spaces(transcript)[-TRANSCRIPT_QUERY_CHARS:]
        scored = await self.memory_service.search_memories(owner_id, persona_id, query, limit=SEARCH_LIMIT, now=now)
        by_id = {item.memory.memory_id: item.memory for item in scored}
        relevant = cap_relevant(
            (
                ContextMemory(
                    memory_id=item.memory.memory_id,
                    memory_type=item.memory.memory_type,
                    content=item.memory.content,
                    score=round(item.blended, 4),
                )
                for item in scored
                if item.memory.memory_id not in foundation_ids
            ),
            exclude_content=[memory.content for memory in foundation],
        )
        relevant_records = [by_id[memory.memory_id] for memory in relevant if memory.memory_id in by_id]
        cards = await self._entity_cards(
            owner_id,
            persona_id,
            relevant_records,
            foundation_ids | {memory.memory_id for memory in relevant_records},
        )

        pending = await self.store.list_pending_loops(owner_id, persona_id)
        rolling, session_summary = await self._summaries(owner_id, persona_id, session)
        return ContextPayload(
            owner_id=owner_id,
            persona_id=persona_id,
            session_id=session.session_id if session else None,
            is_session_start=is_session_start,
            source="local",
            foundation_memories=[
                ContextMemory(memory_id=memory.memory_id, memory_type=memory.memory_type, content=memory.content)
                for memory in foundation
            ],
            relevant_memories=relevant,
            entity_cards=cards,
            commitments=cap_loop_texts(pending, "COMMITMENT"),
            threads=cap_loop_texts(pending, "THREAD"),
            frictions=cap_loop_texts(pending, "FRICTION"),
            habits=cap_loop_texts(pending, "HABIT"),
            recent_wins=await self._recent_wins(owner_id, persona_id, now),
            rolling_summary=rolling,
            session_summary=session_summary,
            recent_messages=await self._recent_messages(owner_id, persona_id, session),
        )

    async def build_remote(
        self,
        owner_id: str,
        persona_id: str,
        transcript: str,
        session: SessionRecord | None,
        is_session_start: bool,
        now: datetime,
    ) -> ContextPayload | None:
        """Map the continuity service brief into the local payload shape; ``None`` means fall back."""
        brief = await self.continuity.brief(
            {
                "userId": owner_id,
                "personaId": persona_id,
                "sessionId": session.session_id if session else None,
                "transcript": collapse_spaces(transcript)[-TRANSCRIPT_QUERY_CHARS:],
                "isSessionStart": is_session_start,
                "now": to_iso(now),
            }
        )
        if not isinstance(brief, dict):
            return None

        facts: list[ContextMemory] = []
        for item in brief.get("facts") or []:
            if isinstance(item, dict):
                memory_type = str(item.get("type", "PROFILE")).strip().upper()
                content = collapse_spaces(str(item.get("content") or item.get("text") or ""))
            else:
                memory_type, content = "PROFILE", collapse_spaces(str(item or ""))
            if content and memory_type in MEMORY_TYPES:
                facts.append(ContextMemory(memory_id=None, memory_type=memory_type, content=content))

        situational: list[str] = []
        focus = brief.get("currentFocus")
        if isinstance(focus, str) and focus.strip():
            situational.append(f"Current focus: {collapse_spaces(focus)}")
        anchors = brief.get("contextAnchors") if isinstance(brief.get("contextAnchors"), dict) else {}
        time_gap = anchors.get("timeGapDescription") or brief.get("timeGapDescription")
        if isinstance(time_gap, str) and time_gap.strip():
            situational.append(f"Time gap: {collapse_spaces(time_gap)}")

        foundation = await self._foundation(owner_id, persona_id)
        rolling, session_summary = await self._summaries(owner_id, persona_id, session)
        return ContextPayload(
            owner_id=owner_id,
            persona_id=persona_id,
            session_id=session.session_id if session else None,
            is_session_start=is_session_start,
            source="remote",
            foundation_memories=[
                ContextMemory(memory_id=memory.memory_id, memory_type=memory.memory_type, content=memory.content)
                for memory in foundation
            ],
            relevant_memories=cap_relevant(facts, exclude_content=[memory.content for memory in foundation]),
            commitments=_unique_texts(brief.get("commitments") or [], LOOP_CAPS["COMMITMENT"]),
            threads=_unique_texts(brief.get("openLoops") or [], LOOP_CAPS["THREAD"]),
            frictions=_unique_texts(brief.get("activeLoops") or [], LOOP_CAPS["FRICTION"]),
            recent_wins=_unique_texts(
                [win for win in brief.get("recentWins") or [] if not (isinstance(win, str) and LEGACY_WIN_RE.match(win))],
                RECENT_WINS_CAP,
            ),
            rolling_summary=rolling,
            session_summary=session_summary,
            situational=situational,
            recent_messages=await self._recent_messages(owner_id, persona_id, session),
        )
