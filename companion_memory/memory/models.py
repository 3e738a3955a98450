from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .entities import (
    canonicalize_entity_refs,
    clamp_importance,
    enforce_importance_for_pinned,
    sanitize_entity_label,
    sanitize_subtype,
)

MEMORY_TYPES = ("PROFILE", "PEOPLE", "PROJECT")
LOOP_KINDS = ("COMMITMENT", "HABIT", "THREAD", "FRICTION")

STATUS_ACTIVE = "ACTIVE"
STATUS_ARCHIVED = "ARCHIVED"

LOOP_PENDING = "PENDING"
LOOP_COMPLETED = "COMPLETED"

SEEDED_SOURCES = frozenset({"gospel", "seed", "seeded_profile"})
FOLD_SOURCE = "curated_fold"

_KNOWN_METADATA_KEYS = frozenset(
    {
        "source",
        "subtype",
        "entityRefs",
        "entity_refs",
        "entityLabel",
        "entity_label",
        "importance",
        "mentionCount",
        "mention_count",
        "status",
        "archivedAt",
        "archived_at",
        "archiveReason",
        "archive_reason",
        "pinned",
        "confidence",
        "foldedFromIds",
        "folded_from_ids",
        "foldedInto",
        "folded_into",
    }
)


@dataclass(slots=True)
class MemorySubtype:
    entity_type: str | None = None
    fact_type: str | None = None

    @classmethod
    def from_raw(cls, raw: object) -> "MemorySubtype | None":
        cleaned = sanitize_subtype(raw)
        if not cleaned:
            return None
        return cls(entity_type=cleaned.get("entityType"), fact_type=cleaned.get("factType"))

    def to_dict(self) -> dict[str, str]:
        result: dict[str, str] = {}
        if self.entity_type:
            result["entityType"] = self.entity_type
        if self.fact_type:
            result["factType"] = self.fact_type
        return result


@dataclass(slots=True)
class MemoryMetadata:
    """Validated view of the metadata bag persisted alongside a memory row."""

    source: str = "unknown"
    subtype: MemorySubtype | None = None
    entity_refs: list[str] = field(default_factory=list)
    entity_label: str | None = None
    importance: int = 1
    mention_count: int = 1
    status: str = STATUS_ACTIVE
    archived_at: str | None = None
    archive_reason: str | None = None
    pinned: bool = False
    confidence: float | None = None
    folded_from_ids: list[str] = field(default_factory=list)
    folded_into: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.entity_refs = canonicalize_entity_refs(self.entity_refs)
        self.importance = enforce_importance_for_pinned(clamp_importance(self.importance), self.pinned)
        self.mention_count = max(1, int(self.mention_count or 1))
        if self.status not in (STATUS_ACTIVE, STATUS_ARCHIVED):
            self.status = STATUS_ACTIVE

    @classmethod
    def from_dict(cls, raw: object) -> "MemoryMetadata":
        if isinstance(raw, MemoryMetadata):
            return cls.from_dict(raw.to_dict())
        if not isinstance(raw, dict):
            return cls()

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in raw:
                    return raw[key]
            return None

        source = pick("source")
        status = str(pick("status") or STATUS_ACTIVE).upper()
        confidence = pick("confidence")
        mention_count = pick("mentionCount", "mention_count")
        folded_from = pick("foldedFromIds", "folded_from_ids")
        archived_at = pick("archivedAt", "archived_at")
        archive_reason = pick("archiveReason", "archive_reason")
        folded_into = pick("foldedInto", "folded_into")
        refs = pick("entityRefs", "entity_refs")

        return cls(
            source=str(source).strip() if isinstance(source, str) and source.strip() else "unknown",
            subtype=MemorySubtype.from_raw(pick("subtype")),
            entity_refs=list(refs) if isinstance(refs, (list, tuple)) else [],
            entity_label=sanitize_entity_label(pick("entityLabel", "entity_label")),
            importance=clamp_importance(pick("importance")),
            mention_count=mention_count if isinstance(mention_count, int) and not isinstance(mention_count, bool) else 1,
            status=status,
            archived_at=str(archived_at) if archived_at else None,
            archive_reason=str(archive_reason) if archive_reason else None,
            pinned=pick("pinned") is True,
            confidence=float(confidence) if isinstance(confidence, (int, float)) and not isinstance(confidence, bool) else None,
            folded_from_ids=[str(item) for item in folded_from] if isinstance(folded_from, (list, tuple)) else [],
            folded_into=str(folded_into) if folded_into else None,
            extra={key: value for key, value in raw.items() if key not in _KNOWN_METADATA_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = dict(self.extra)
        result.update(
            {
                "source": self.source,
                "entityRefs": list(self.entity_refs),
                "importance": self.importance,
                "mentionCount": self.mention_count,
                "status": self.status,
            }
        )
        subtype = self.subtype.to_dict() if self.subtype else {}
        if subtype:
            result["subtype"] = subtype
        if self.entity_label:
            result["entityLabel"] = self.entity_label
        if self.archived_at:
            result["archivedAt"] = self.archived_at
        if self.archive_reason:
            result["archiveReason"] = self.archive_reason
        if self.pinned:
            result["pinned"] = True
        if self.confidence is not None:
            result["confidence"] = self.confidence
        if self.folded_from_ids:
            result["foldedFromIds"] = list(self.folded_from_ids)
        if self.folded_into:
            result["foldedInto"] = self.folded_into
        return result

    @property
    def is_archived(self) -> bool:
        return self.status == STATUS_ARCHIVED

    @property
    def is_seeded(self) -> bool:
        return self.source in SEEDED_SOURCES

    @property
    def is_fold(self) -> bool:
        return self.source == FOLD_SOURCE


@dataclass(slots=True)
class MemoryRecord:
    memory_id: str
    owner_id: str
    persona_scope: str | None
    memory_type: str
    content: str
    memory_key: str | None
    metadata: MemoryMetadata
    created_at: datetime
    updated_at: datetime
    has_embedding: bool = False
    similarity: float | None = None


@dataclass(slots=True)
class LoopRecord:
    loop_id: str
    owner_id: str
    persona_id: str
    content: str
    kind: str
    status: str
    dedupe_key: str
    created_at: datetime
    completed_at: datetime | None = None
    resolution: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == LOOP_PENDING


@dataclass(slots=True)
class SessionRecord:
    session_id: str
    owner_id: str
    persona_id: str
    started_at: datetime
    last_activity_at: datetime
    ended_at: datetime | None
    turn_count: int

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


@dataclass(slots=True)
class SessionSummaryRecord:
    session_id: str
    owner_id: str
    persona_id: str
    summary: dict[str, Any]
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class SessionStateRecord:
    owner_id: str
    persona_id: str
    rolling_summary: str
    state: dict[str, Any]
    updated_at: datetime


@dataclass(slots=True)
class MessageRecord:
    message_id: int
    owner_id: str
    persona_id: str
    role: str
    content: str
    created_at: datetime


@dataclass(slots=True)
class SummarySpineRecord:
    owner_id: str
    conversation_id: str
    version: int
    content: str
    message_count: int
    created_at: datetime
