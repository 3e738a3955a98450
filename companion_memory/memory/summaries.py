from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Protocol

from ..common import collapse_spaces, truncate, utc_now
from ..prompts.memory import (
    SUMMARY_SPINE_SECTIONS,
    build_rolling_summary_system_prompt,
    build_rolling_summary_user_prompt,
    build_summary_spine_system_prompt,
    build_summary_spine_user_prompt,
)
from .models import SummarySpineRecord

logger = logging.getLogger("companion_memory")

ROLLING_SUMMARY_MAX_CHARS = 600
ROLLING_SUMMARY_DIALOGUE_LIMIT = 12
SPINE_REFRESH_MESSAGE_THRESHOLD = 20
SPINE_MAX_CHARS = 2400


class _CompletionBackend(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int = 600,
        json_mode: bool = False,
    ) -> str: ...


class RollingSummarizer:
    """Short in-session digest refreshed every few turns."""

    def __init__(
        self,
        store: Any,
        llm: _CompletionBackend,
        *,
        model: str | None = None,
        max_chars: int = ROLLING_SUMMARY_MAX_CHARS,
    ) -> None:
        self.store = store
        self.llm = llm
        self.model = model
        self.max_chars = max(120, int(max_chars))

    async def _dialogue_lines(self, owner_id: str, persona_id: str, since: datetime | None) -> list[str]:
        recent = await self.store.get_recent_messages(
            owner_id,
            persona_id,
            since=since,
            limit=ROLLING_SUMMARY_DIALOGUE_LIMIT,
        )
        lines: list[str] = []
        for message in reversed(recent):
            label = "Assistant" if message.role == "assistant" else "User"
            text = collapse_spaces(message.content)[:400]
            if text:
                lines.append(f"{label}: {text}")
        return lines

    async def summarize(
        self,
        owner_id: str,
        persona_id: str,
        *,
        previous_summary: str = "",
        since: datetime | None = None,
    ) -> str:
        """Return the refreshed summary text; raises when the completion call fails."""
        lines = await self._dialogue_lines(owner_id, persona_id, since)
        if not lines:
            return previous_summary
        messages = [
            {"role": "system", "content": build_rolling_summary_system_prompt(self.max_chars)},
            {"role": "user", "content": build_rolling_summary_user_prompt(previous_summary, lines)},
        ]
        raw = await self.llm.complete(messages, model=self.model, temperature=0.2, max_output_tokens=400)
        text = collapse_spaces(raw)
        if not text:
            raise RuntimeError("rolling summary completion returned empty text")
        return truncate(text, self.max_chars)


def _normalize_spine(text: str) -> str:
    lines = [line.rstrip() for line in (text or "").strip().splitlines()]
    body = "\n".join(line for line in lines if line.strip())
    upper = body.upper()
    missing = [section for section in SUMMARY_SPINE_SECTIONS if section.upper() not in upper]
    for section in missing:
        body += f"\n{section}\n-"
    return body.strip()[:SPINE_MAX_CHARS]


class SummarySpineWriter:
    """Versioned long-form summary of everything known about a user."""

    def __init__(
        self,
        store: Any,
        llm: _CompletionBackend,
        *,
        model: str | None = None,
        refresh_threshold: int = SPINE_REFRESH_MESSAGE_THRESHOLD,
    ) -> None:
        self.store = store
        self.llm = llm
        self.model = model
        self.refresh_threshold = max(1, int(refresh_threshold))

    def is_due(self, latest: SummarySpineRecord | None, messages_since_version: int) -> bool:
        return latest is None or messages_since_version > self.refresh_threshold

    async def write_version(
        self,
        owner_id: str,
        user_text: str,
        assistant_text: str,
        *,
        latest: SummarySpineRecord | None,
        message_count: int,
        conversation_id: str = "default",
        now: datetime | None = None,
    ) -> SummarySpineRecord | None:
        messages = [
            {"role": "system", "content": build_summary_spine_system_prompt()},
            {
                "role": "user",
                "content": build_summary_spine_user_prompt(
                    latest.content if latest else "",
                    collapse_spaces(user_text)[:1200],
                    collapse_spaces(assistant_text)[:1200],
                ),
            },
        ]
        raw = await self.llm.complete(messages, model=self.model, temperature=0.3, max_output_tokens=700)
        cleaned = re.sub(r"```[a-z]*", "", raw or "").strip()
        if not cleaned:
            logger.warning("Summary spine completion returned empty text: owner=%s", owner_id)
            return None
        return await self.store.create_summary_spine_version(
            owner_id,
            _normalize_spine(cleaned),
            message_count=message_count,
            conversation_id=conversation_id,
            now=now or utc_now(),
        )
