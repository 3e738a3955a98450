from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Protocol

from ..common import collapse_spaces, utc_now
from .models import MEMORY_TYPES, MemoryMetadata, MemoryRecord, MemorySubtype
from .scoring import PREFILTER_K, ScoredMemory, compute_blended_scores, similarity_only
from .storage.utils import compute_memory_key

logger = logging.getLogger("companion_memory")

MAX_MEMORY_CONTENT_CHARS = 500


class _Embedder(Protocol):
    async def embed(self, text: str) -> list[float] | None: ...


@dataclass(slots=True)
class MemoryWriteResult:
    record: MemoryRecord
    created: bool


class MemoryService:
    """Idempotent memory writes and blended-score retrieval on top of a memory store."""

    def __init__(
        self,
        store: Any,
        embedder: _Embedder | None = None,
        *,
        supervisor: Any = None,
        blended_scoring: bool = True,
        embedding_timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.supervisor = supervisor
        self.blended_scoring = bool(blended_scoring)
        self.embedding_timeout_seconds = max(0.1, float(embedding_timeout_seconds))

    async def _embed(self, text: str) -> list[float] | None:
        if self.embedder is None:
            return None
        try:
            return await asyncio.wait_for(self.embedder.embed(text), timeout=self.embedding_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Embedding timed out after %.1fs", self.embedding_timeout_seconds)
            return None
        except Exception as exc:
            logger.warning("Embedding failed: %s", exc)
            return None

    async def _attach_embedding(self, memory_id: str, content: str) -> bool:
        vector = await self._embed(content)
        if not vector:
            return False
        await self.store.set_memory_embedding(memory_id, vector)
        return True

    async def _schedule_embedding(self, record: MemoryRecord) -> None:
        if self.embedder is None:
            return
        if self.supervisor is not None:
            self.supervisor.submit(
                "memory_embedding",
                lambda: self._attach_embedding(record.memory_id, record.content),
            )
            return
        try:
            await self._attach_embedding(record.memory_id, record.content)
        except Exception:
            logger.exception("Embedding attach failed for memory %s", record.memory_id)

    async def store_memory(
        self,
        owner_id: str,
        memory_type: str,
        content: str,
        metadata: MemoryMetadata | dict[str, Any] | None = None,
        persona_scope: str | None = None,
        *,
        dedupe: bool = True,
        now: datetime | None = None,
    ) -> MemoryWriteResult:
        """Create a memory or merge into the one with the same identity.

        A merge never rewrites content: refs are unioned, importance keeps the max and the
        mention count grows by one. New rows get an embedding attached afterwards; a missing
        embedding never fails the write.
        """
        memory_type = str(memory_type or "").strip().upper()
        if memory_type not in MEMORY_TYPES:
            raise ValueError(f"Unsupported memory type: {memory_type!r}")
        text = collapse_spaces(content)[:MAX_MEMORY_CONTENT_CHARS]
        if not text:
            raise ValueError("Memory content cannot be empty")

        meta = MemoryMetadata.from_dict(metadata if metadata is not None else {})
        memory_key = compute_memory_key(memory_type, text, meta) if dedupe else None
        record, created = await self.store.upsert_memory(
            owner_id=owner_id,
            persona_scope=persona_scope,
            memory_type=memory_type,
            content=text,
            memory_key=memory_key,
            metadata=meta,
            now=now,
        )
        if created:
            await self._schedule_embedding(record)
        else:
            logger.debug(
                "Memory merged: owner=%s key=%s mentions=%s",
                owner_id,
                memory_key,
                record.metadata.mention_count,
            )
        return MemoryWriteResult(record=record, created=created)

    async def seed_memory(
        self,
        owner_id: str,
        memory_type: str,
        content: str,
        *,
        entity_refs: Iterable[str] = (),
        entity_label: str | None = None,
        subtype: dict[str, str] | None = None,
        persona_scope: str | None = None,
        now: datetime | None = None,
    ) -> MemoryWriteResult:
        metadata = MemoryMetadata(
            source="gospel",
            subtype=MemorySubtype.from_raw(subtype),
            entity_refs=list(entity_refs),
            entity_label=entity_label,
            importance=3,
            pinned=True,
        )
        return await self.store_memory(owner_id, memory_type, content, metadata, persona_scope, now=now)

    async def search_memories(
        self,
        owner_id: str,
        persona_id: str | None,
        query: str,
        limit: int = 5,
        *,
        now: datetime | None = None,
    ) -> list[ScoredMemory]:
        """Rank non-archived memories for ``query``; empty when no query embedding is available."""
        cleaned = collapse_spaces(query)
        if not cleaned or limit <= 0:
            return []
        vector = await self._embed(cleaned)
        if not vector:
            return []

        candidates = await self.store.vector_candidates(owner_id, persona_id, vector, limit=PREFILTER_K)
        active = [memory for memory in candidates if not memory.metadata.is_archived]
        reference_now = now or utc_now()
        if self.blended_scoring:
            ranked = compute_blended_scores(active, reference_now)
        else:
            ranked = similarity_only(active, reference_now)
        return ranked[:limit]

    async def backfill_embeddings(self, limit: int = 50) -> int:
        if self.embedder is None:
            return 0
        pending = await self.store.list_memories_missing_embedding(limit=limit)
        attached = 0
        for memory in pending:
            if await self._attach_embedding(memory.memory_id, memory.content):
                attached += 1
        if pending:
            logger.info("Embedding backfill: attached=%s scanned=%s", attached, len(pending))
        return attached
