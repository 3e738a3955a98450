from __future__ import annotations

import re
from dataclasses import dataclass

from ..common import collapse_spaces, normalize_content
from .models import MEMORY_TYPES

_RELATIONSHIP_TERMS = (
    "wife",
    "husband",
    "partner",
    "girlfriend",
    "boyfriend",
    "fiance",
    "fiancee",
    "spouse",
    "mom",
    "mum",
    "mother",
    "dad",
    "father",
    "parent",
    "brother",
    "sister",
    "sibling",
    "son",
    "daughter",
    "kid",
    "kids",
    "child",
    "children",
    "friend",
    "boss",
    "manager",
    "coworker",
    "colleague",
    "roommate",
    "cousin",
    "aunt",
    "uncle",
    "grandma",
    "grandmother",
    "grandpa",
    "grandfather",
    "neighbor",
    "neighbour",
    "therapist",
    "coach",
    "teammate",
    "mentor",
)
_TERMS_ALT = "|".join(_RELATIONSHIP_TERMS)

RELATIONSHIP_TERM_RE = re.compile(rf"\b(?:{_TERMS_ALT})s?\b", re.IGNORECASE)
RELATIONSHIP_CUE_RE = re.compile(
    rf"\b(?:my|our)\s+(?:\w+\s+)?(?:{_TERMS_ALT})s?\b|\b(?:is|was|are|were)\s+my\b|'s\s+my\b",
    re.IGNORECASE,
)

META_PATTERNS = (
    re.compile(r"\bthis is (?:a|just a|only a) test\b", re.IGNORECASE),
    re.compile(r"\b(?:testing|debugging)\s+(?:the|this|your|you|an?|my)\b", re.IGNORECASE),
    re.compile(r"\b(?:the|this|an?)\s+(?:ai|assistant|chatbot|bot|language model)\b", re.IGNORECASE),
    re.compile(r"\b(?:system|user|persona)\s+prompt\b", re.IGNORECASE),
    re.compile(r"\bmemory\s+(?:system|store|feature|bank)\b", re.IGNORECASE),
    re.compile(r"\b(?:this|our|the current)\s+(?:conversation|chat|session)\b", re.IGNORECASE),
    re.compile(r"\b(?:asked|told|wants) (?:the|you|me) to remember\b", re.IGNORECASE),
)

MAX_CONTENT_CHARS = 280
MAX_PERSONA_PROFILE_WORDS = 10


@dataclass(slots=True)
class MemoryModerationDecision:
    action: str
    reason: str

    @property
    def accepted(self) -> bool:
        return self.action == "accept"


@dataclass(slots=True)
class MemoryModerationInput:
    memory_type: str
    content: str
    confidence: float | None
    window_text: str


def is_meta_content(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in META_PATTERNS)


class MemoryModerationPolicy:
    """Quality gate for judge candidates before they reach the memory store."""

    def __init__(self, *, min_confidence: float = 0.4, persona_name: str = "") -> None:
        self.min_confidence = max(0.0, min(1.0, float(min_confidence)))
        self.persona_name = collapse_spaces(persona_name).casefold()

    @classmethod
    def from_settings(cls, settings: object) -> "MemoryModerationPolicy":
        return cls(
            min_confidence=float(getattr(settings, "judge_min_confidence", 0.4)),
            persona_name=str(getattr(settings, "persona_name", "") or ""),
        )

    def _names_persona(self, content: str) -> bool:
        if not self.persona_name:
            return False
        return re.search(rf"\b{re.escape(self.persona_name)}\b", content.casefold()) is not None

    def evaluate(self, data: MemoryModerationInput) -> MemoryModerationDecision:
        memory_type = str(data.memory_type or "").strip().upper()
        content = collapse_spaces(data.content)

        if memory_type not in MEMORY_TYPES:
            return MemoryModerationDecision("reject", "unknown_type")
        if len(content) < 3:
            return MemoryModerationDecision("reject", "empty_content")
        if len(content) > MAX_CONTENT_CHARS:
            return MemoryModerationDecision("reject", "content_too_long")
        if data.confidence is not None and data.confidence < self.min_confidence:
            return MemoryModerationDecision("reject", "confidence_below_threshold")
        if is_meta_content(content):
            return MemoryModerationDecision("reject", "meta_content")

        # "Hey Sophie" style turns must not turn the persona into a user fact.
        if memory_type == "PROFILE" and self._names_persona(content):
            words = normalize_content(content).split()
            if normalize_content(content) == self.persona_name or len(words) <= MAX_PERSONA_PROFILE_WORDS:
                return MemoryModerationDecision("reject", "persona_self_profile")

        if memory_type == "PEOPLE":
            if not RELATIONSHIP_TERM_RE.search(content):
                return MemoryModerationDecision("reject", "people_without_relationship")
            if not RELATIONSHIP_CUE_RE.search(data.window_text or ""):
                return MemoryModerationDecision("reject", "people_without_window_cue")

        return MemoryModerationDecision("accept", "accepted")
