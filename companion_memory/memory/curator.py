from __future__ import annotations

import dataclasses
import logging
import re
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from ..common import normalize_content, parse_dt, to_iso, utc_now
from .entities import canonicalize_entity_refs, parse_entity_key
from .models import FOLD_SOURCE, MEMORY_TYPES, STATUS_ARCHIVED, MemoryMetadata, MemoryRecord
from .service import MemoryService
from .state import SessionStateService, get_path, set_path

logger = logging.getLogger("companion_memory")

MAX_FOLDS_PER_RUN = 5
MIN_FOLD_GROUP = 3
MAX_FOLD_DETAILS = 5
SLOW_RUN_WARNING_SECONDS = 5.0

_LABEL_STOPWORDS = {
    "i",
    "i'm",
    "my",
    "me",
    "the",
    "a",
    "an",
    "she",
    "he",
    "they",
    "her",
    "his",
    "their",
    "user",
    "user's",
    "we",
    "our",
    "it",
    "this",
    "that",
}


def detect_entity_label(memory: MemoryRecord) -> str | None:
    """Name of the person a PEOPLE memory is about: explicit label, person ref, then first proper noun."""
    if memory.metadata.entity_label:
        return memory.metadata.entity_label
    for ref in memory.metadata.entity_refs:
        parsed = parse_entity_key(ref)
        if parsed and parsed[0] == "person":
            return parsed[1].replace("_", " ").title()
    for token in re.findall(r"\b[A-Z][a-z]+(?:'s)?\b", memory.content):
        word = token[:-2] if token.endswith("'s") else token
        if word.casefold() not in _LABEL_STOPWORDS and len(word) >= 2:
            return word
    return None


@dataclass(slots=True)
class CuratorRunResult:
    owner_id: str
    archived_duplicates: int = 0
    folded: int = 0
    loops_deduped: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "archivedDuplicates": self.archived_duplicates,
            "folded": self.folded,
            "loopsDeduped": self.loops_deduped,
            "durationMs": self.duration_ms,
        }


class MemoryCurator:
    """Deterministic hygiene and fold passes over stored memories, plus the auto-trigger policy.

    The cooldown map is per process; ``curator.lastRunAt`` in session state is the durable record.
    """

    def __init__(
        self,
        store: Any,
        memory_service: MemoryService,
        state_service: SessionStateService,
        *,
        enabled: bool = True,
        cooldown_seconds: float = 60.0,
        min_interval_hours: float = 24.0,
        memory_threshold: int = 25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.memory_service = memory_service
        self.state_service = state_service
        self.enabled = bool(enabled)
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self.min_interval = timedelta(hours=max(0.0, float(min_interval_hours)))
        self.memory_threshold = max(1, int(memory_threshold))
        self._clock = clock
        self._last_trigger: dict[str, float] = {}

    async def _archive(self, memory: MemoryRecord, reason: str, now: datetime, *, folded_into: str | None = None) -> None:
        metadata = dataclasses.replace(
            memory.metadata,
            status=STATUS_ARCHIVED,
            archived_at=to_iso(now),
            archive_reason=reason,
            folded_into=folded_into or memory.metadata.folded_into,
        )
        await self.store.update_memory_metadata(memory.memory_id, metadata, now=now)

    async def hygiene_pass(self, owner_id: str, *, now: datetime) -> int:
        memories = await self.store.list_memories(owner_id, types=MEMORY_TYPES)
        groups: dict[tuple[str, str], list[MemoryRecord]] = defaultdict(list)
        for memory in memories:
            key = normalize_content(memory.content)
            if key:
                groups[(memory.memory_type, key)].append(memory)

        archived = 0
        for members in groups.values():
            if len(members) < 2:
                continue
            seeded = [memory for memory in members if memory.metadata.is_seeded]
            pool = seeded or members
            keeper = max(pool, key=lambda memory: (memory.created_at, memory.memory_id))
            for memory in members:
                if memory.memory_id == keeper.memory_id:
                    continue
                await self._archive(memory, "dedupe", now)
                archived += 1
        return archived

    async def loop_hygiene_pass(self, owner_id: str, *, now: datetime) -> int:
        deduped = 0
        for persona_id in await self.store.list_loop_scopes(owner_id):
            seen: set[tuple[str, str]] = set()
            # newest first, so the newest pending loop of a signature survives
            for loop in await self.store.list_pending_loops(owner_id, persona_id):
                signature = (loop.kind, normalize_content(loop.dedupe_key or loop.content))
                if signature in seen:
                    if await self.store.complete_loop(loop.loop_id, completed_at=now, resolution="deduped"):
                        deduped += 1
                    continue
                seen.add(signature)
        return deduped

    async def fold_pass(self, owner_id: str, *, now: datetime) -> int:
        memories = await self.store.list_memories(owner_id, types=("PEOPLE",))
        groups: dict[str, list[MemoryRecord]] = {}
        labels: dict[str, str] = {}
        for memory in memories:
            meta = memory.metadata
            if meta.is_seeded or meta.is_fold or meta.folded_into:
                continue
            label = detect_entity_label(memory)
            if not label:
                continue
            key = label.casefold()
            groups.setdefault(key, []).append(memory)
            labels.setdefault(key, label)

        folded = 0
        for key, members in groups.items():
            if folded >= MAX_FOLDS_PER_RUN:
                break
            if len(members) < MIN_FOLD_GROUP:
                continue
            label = labels[key]
            details = " / ".join(memory.content for memory in members[:MAX_FOLD_DETAILS])
            scopes = {memory.persona_scope for memory in members}
            metadata = MemoryMetadata(
                source=FOLD_SOURCE,
                entity_refs=canonicalize_entity_refs(*(memory.metadata.entity_refs for memory in members)),
                entity_label=label,
                importance=2,
                folded_from_ids=[memory.memory_id for memory in members],
            )
            result = await self.memory_service.store_memory(
                owner_id,
                "PEOPLE",
                f"{label}: {details}",
                metadata,
                scopes.pop() if len(scopes) == 1 else None,
                dedupe=False,
                now=now,
            )
            for memory in members:
                await self._archive(memory, "fold", now, folded_into=result.record.memory_id)
            folded += 1
        return folded

    async def run_for_owner(self, owner_id: str, *, now: datetime | None = None) -> CuratorRunResult:
        now = now or utc_now()
        started = time.perf_counter()
        result = CuratorRunResult(owner_id=owner_id)
        result.archived_duplicates = await self.hygiene_pass(owner_id, now=now)
        result.loops_deduped = await self.loop_hygiene_pass(owner_id, now=now)
        result.folded = await self.fold_pass(owner_id, now=now)
        elapsed = time.perf_counter() - started
        result.duration_ms = int(elapsed * 1000)
        if elapsed > SLOW_RUN_WARNING_SECONDS:
            logger.warning("Curator run slow: owner=%s seconds=%.2f", owner_id, elapsed)
        logger.info(
            "Curator run: owner=%s archived=%s folded=%s loops_deduped=%s ms=%s",
            owner_id,
            result.archived_duplicates,
            result.folded,
            result.loops_deduped,
            result.duration_ms,
        )
        return result

    async def auto_curate_maybe(
        self,
        owner_id: str,
        persona_id: str,
        *,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if not self.enabled:
            return {"skipped": True, "reason": "disabled"}
        now = now or utc_now()
        scope = f"{owner_id}:{persona_id}"
        tick = self._clock()
        last_trigger = self._last_trigger.get(scope)
        if last_trigger is not None and tick - last_trigger < self.cooldown_seconds:
            return {"skipped": True, "reason": "cooldown"}
        self._last_trigger[scope] = tick

        record = await self.state_service.get(owner_id, persona_id)
        last_run_at = parse_dt(get_path(record.state, "curator.lastRunAt"))
        created_since = await self.store.count_memories_created_since(owner_id, last_run_at)
        due = (
            last_run_at is None
            or now - last_run_at >= self.min_interval
            or created_since >= self.memory_threshold
        )
        if not due:
            return {"skipped": True, "reason": "not_due", "memoriesSinceLastRun": created_since}

        result = await self.run_for_owner(owner_id, now=now)
        total_active = await self.store.count_memories_created_since(owner_id, None)

        def mutate(state: dict[str, Any]) -> None:
            set_path(state, "curator.lastRunAt", to_iso(now))
            set_path(state, "curator.lastMemoryCountAtRun", total_active)

        await self.state_service.update(owner_id, persona_id, mutate, now=now)
        return {"skipped": False, **result.to_dict()}

    async def run_curator_batch(self, limit_owners: int = 25, *, now: datetime | None = None) -> dict[str, Any]:
        if not self.enabled:
            return {"enabled": False, "folded": 0, "archived": 0, "ownersProcessed": 0}
        owners = await self.store.list_recent_memory_owners(limit=limit_owners)
        folded = 0
        archived = 0
        for owner_id in owners:
            result = await self.run_for_owner(owner_id, now=now)
            folded += result.folded
            archived += result.archived_duplicates
        return {"enabled": True, "folded": folded, "archived": archived, "ownersProcessed": len(owners)}
