from __future__ import annotations

import json
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

try:
    import aiosqlite
except Exception:  # pragma: no cover - optional in Postgres-only deployments
    aiosqlite = None  # type: ignore[assignment]

from ...common import normalize_content
from ..entities import canonicalize_entity_refs, enforce_importance_for_pinned
from ..models import STATUS_ACTIVE, MemoryMetadata

MEMORY_KEY_CONTENT_CHARS = 120


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(
    db_path: str | Path,
    *,
    busy_timeout_ms: int | None = None,
) -> AsyncIterator["aiosqlite.Connection"]:
    if aiosqlite is None:
        raise RuntimeError("SQLite memory backend requires aiosqlite")
    async with aiosqlite.connect(db_path) as db:  # type: ignore[union-attr]
        db.row_factory = aiosqlite.Row  # type: ignore[union-attr]
        await db.execute("PRAGMA foreign_keys=ON")
        timeout_ms = _sqlite_busy_timeout_ms() if busy_timeout_ms is None else max(0, min(busy_timeout_ms, 60000))
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        yield db


def new_id() -> str:
    return uuid.uuid4().hex


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def load_json_dict(raw: object) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(str(raw))
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def load_embedding(raw: object) -> list[float] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(str(raw))
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, list) or not parsed:
        return None
    try:
        return [float(value) for value in parsed]
    except (TypeError, ValueError):
        return None


def normalize_memory_content(content: str) -> str:
    return normalize_content(content, max_chars=MEMORY_KEY_CONTENT_CHARS)


def compute_memory_key(memory_type: str, content: str, metadata: MemoryMetadata) -> str:
    """Dedupe identity: ``{type}|{entityType|none}|{primaryRef}|{factType|fact}``."""
    subtype = metadata.subtype
    entity_type = (subtype.entity_type if subtype else None) or "none"
    fact_type = (subtype.fact_type if subtype else None) or "fact"
    if metadata.entity_refs:
        primary = metadata.entity_refs[0]
    else:
        primary = f"content:{normalize_memory_content(content)}"
    return f"{memory_type}|{entity_type}|{primary}|{fact_type}"


def merge_memory_metadata(prior: MemoryMetadata, incoming: MemoryMetadata) -> MemoryMetadata:
    """Merge an incoming observation into an existing row's metadata.

    Entity refs are unioned, importance takes the max, mention count increments, and the
    remaining descriptive fields are shallow-merged with the incoming value winning. Lifecycle
    fields and seeded provenance stay with the stored row, except that a fresh mention
    reactivates a row archived by hygiene. Rows archived into a fold stay archived.
    """
    pinned = prior.pinned or incoming.pinned
    importance = enforce_importance_for_pinned(max(prior.importance, incoming.importance), pinned)
    extra = dict(prior.extra)
    extra.update(incoming.extra)
    # Seeded rows keep their provenance so hygiene keeps preferring them.
    if prior.is_seeded or incoming.source == "unknown":
        source = prior.source
    else:
        source = incoming.source
    reactivate = prior.is_archived and prior.archive_reason != "fold" and not prior.folded_into
    return MemoryMetadata(
        source=source,
        subtype=incoming.subtype or prior.subtype,
        entity_refs=canonicalize_entity_refs(prior.entity_refs, incoming.entity_refs),
        entity_label=incoming.entity_label or prior.entity_label,
        importance=importance,
        mention_count=prior.mention_count + 1,
        status=STATUS_ACTIVE if reactivate else prior.status,
        archived_at=None if reactivate else prior.archived_at,
        archive_reason=None if reactivate else prior.archive_reason,
        pinned=pinned,
        confidence=incoming.confidence if incoming.confidence is not None else prior.confidence,
        folded_from_ids=list(prior.folded_from_ids),
        folded_into=prior.folded_into,
        extra=extra,
    )
