from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from ..common import collapse_spaces, truncate, utc_now
from ..memory.models import SessionRecord, SessionSummaryRecord
from ..prompts.memory import (
    build_session_summary_user_prompt,
    session_summary_schema_hint,
    session_summary_system_prompt,
)

logger = logging.getLogger("companion_memory")

MESSAGES_PER_ROLE = 10
MESSAGE_CHARS = 800
LIST_ITEMS = 5
LIST_ITEM_CHARS = 120
ONE_LINER_CHARS = 200
TONE_CHARS = 40
SUMMARY_LIST_FIELDS = ("what_mattered", "open_loops", "commitments", "people")


def _clean_list(raw: object) -> list[str]:
    if not isinstance(raw, list):
        return []
    items: list[str] = []
    for value in raw:
        text = collapse_spaces(str(value)) if isinstance(value, (str, int, float)) else ""
        if not text or text in items:
            continue
        items.append(truncate(text, LIST_ITEM_CHARS))
        if len(items) >= LIST_ITEMS:
            break
    return items


def normalize_session_summary(payload: dict[str, Any]) -> dict[str, Any] | None:
    one_liner = collapse_spaces(str(payload.get("one_liner", "") or ""))
    if not one_liner:
        return None
    summary: dict[str, Any] = {"one_liner": truncate(one_liner, ONE_LINER_CHARS)}
    for key in SUMMARY_LIST_FIELDS:
        summary[key] = _clean_list(payload.get(key))
    summary["tone"] = collapse_spaces(str(payload.get("tone", "") or ""))[:TONE_CHARS]
    return summary


def fallback_session_summary(user_lines: list[str]) -> dict[str, Any]:
    if user_lines:
        last = collapse_spaces(user_lines[-1])
        one_liner = truncate(f"Talked about: {last}", ONE_LINER_CHARS)
    else:
        one_liner = "Short conversation with no notable topics."
    return {
        "one_liner": one_liner,
        "what_mattered": [],
        "open_loops": [],
        "commitments": [],
        "people": [],
        "tone": "",
    }


class SessionSummarizer:
    """Structured once-per-session digest written when a session closes."""

    def __init__(
        self,
        store: Any,
        llm: Any,
        *,
        model: str | None = None,
        timeout_seconds: float = 20.0,
    ) -> None:
        self.store = store
        self.llm = llm
        self.model = model
        self.timeout_seconds = max(0.5, float(timeout_seconds))

    @property
    def model_name(self) -> str:
        return self.model or str(getattr(self.llm, "model", "") or "")

    async def _transcript(self, session: SessionRecord, end: datetime) -> tuple[list[str], list[str]]:
        lines: list[str] = []
        user_lines: list[str] = []
        users = await self.store.get_messages_between(
            session.owner_id,
            session.persona_id,
            start=session.started_at,
            end=end,
            role="user",
            limit=MESSAGES_PER_ROLE,
        )
        assistants = await self.store.get_messages_between(
            session.owner_id,
            session.persona_id,
            start=session.started_at,
            end=end,
            role="assistant",
            limit=MESSAGES_PER_ROLE,
        )
        merged = sorted([*users, *assistants], key=lambda message: (message.created_at, message.message_id))
        for message in merged:
            text = collapse_spaces(message.content)[:MESSAGE_CHARS]
            if not text:
                continue
            if message.role == "user":
                user_lines.append(text)
                lines.append(f"User: {text}")
            else:
                lines.append(f"Assistant: {text}")
        return lines, user_lines

    async def summarize_session(self, session: SessionRecord, *, now: datetime | None = None) -> SessionSummaryRecord | None:
        """Write the session summary. Never raises; a failed model call stores a fallback with ``parse_error``."""
        now = now or utc_now()
        try:
            return await self._summarize_session(session, now)
        except Exception:
            logger.exception("Session summary failed: session=%s", session.session_id)
            return None

    async def _summarize_session(self, session: SessionRecord, now: datetime) -> SessionSummaryRecord | None:
        end = session.ended_at or now
        lines, user_lines = await self._transcript(session, end)
        if not lines:
            logger.debug("Session summary skipped, empty transcript: session=%s", session.session_id)
            return None

        summary: dict[str, Any] | None = None
        error = ""
        try:
            payload = await asyncio.wait_for(
                self.llm.json_chat(
                    [
                        {"role": "system", "content": session_summary_system_prompt()},
                        {"role": "user", "content": build_session_summary_user_prompt(lines)},
                    ],
                    schema_hint=session_summary_schema_hint(),
                    temperature=0.2,
                    max_output_tokens=700,
                ),
                timeout=self.timeout_seconds,
            )
            if isinstance(payload, dict):
                summary = normalize_session_summary(payload)
            if summary is None:
                error = "invalid_json"
        except asyncio.TimeoutError:
            error = "timeout"
        except Exception as exc:
            error = str(exc)[:220]

        metadata: dict[str, Any] = {"parse_error": summary is None, "model": self.model_name}
        if summary is None:
            logger.warning("Session summary fell back: session=%s reason=%s", session.session_id, error)
            summary = fallback_session_summary(user_lines)
            metadata["error"] = error

        return await self.store.upsert_session_summary(
            session_id=session.session_id,
            owner_id=session.owner_id,
            persona_id=session.persona_id,
            summary=summary,
            metadata=metadata,
            now=now,
        )
