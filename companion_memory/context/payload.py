from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ContextMemory:
    memory_id: str | None
    memory_type: str
    content: str
    score: float | None = None


@dataclass(slots=True)
class ContextPayload:
    """Bounded context handed to the reply generator for one turn."""

    owner_id: str
    persona_id: str
    session_id: str | None
    is_session_start: bool
    source: str = "local"
    foundation_memories: list[ContextMemory] = field(default_factory=list)
    relevant_memories: list[ContextMemory] = field(default_factory=list)
    entity_cards: list[str] = field(default_factory=list)
    commitments: list[str] = field(default_factory=list)
    threads: list[str] = field(default_factory=list)
    frictions: list[str] = field(default_factory=list)
    habits: list[str] = field(default_factory=list)
    recent_wins: list[str] = field(default_factory=list)
    rolling_summary: str = ""
    session_summary: str = ""
    situational: list[str] = field(default_factory=list)
    recent_messages: list[dict[str, Any]] = field(default_factory=list)
    fallback_reason: str = ""

    def render_sections(self) -> list[str]:
        """Prompt-ready blocks. The session summary goes in at session start, the rolling one mid-session."""
        sections: list[str] = []

        def block(title: str, lines: list[str]) -> None:
            if lines:
                sections.append(f"{title}:\n- " + "\n- ".join(lines))

        block("FOUNDATION", [memory.content for memory in self.foundation_memories])
        block("RELEVANT MEMORIES", [*self.entity_cards, *(memory.content for memory in self.relevant_memories)])
        block("COMMITMENTS", self.commitments)
        block("OPEN THREADS", self.threads)
        block("FRICTIONS", self.frictions)
        block("HABITS", self.habits)
        block("RECENT WINS", self.recent_wins)
        block("SITUATION", self.situational)
        if self.is_session_start:
            if self.session_summary:
                sections.append(f"LAST SESSION:\n{self.session_summary}")
        elif self.rolling_summary:
            sections.append(f"CONVERSATION SO FAR:\n{self.rolling_summary}")
        return sections

    def to_dict(self) -> dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "personaId": self.persona_id,
            "sessionId": self.session_id,
            "isSessionStart": self.is_session_start,
            "source": self.source,
            "foundationMemories": [memory.content for memory in self.foundation_memories],
            "relevantMemories": [
                {"type": memory.memory_type, "content": memory.content} for memory in self.relevant_memories
            ],
            "entityCards": list(self.entity_cards),
            "commitments": list(self.commitments),
            "threads": list(self.threads),
            "frictions": list(self.frictions),
            "habits": list(self.habits),
            "recentWins": list(self.recent_wins),
            "rollingSummary": self.rolling_summary,
            "sessionSummary": self.session_summary,
            "situational": list(self.situational),
            "fallbackReason": self.fallback_reason,
        }
