from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .models import MemoryRecord

PREFILTER_K = 50
HALF_LIFE_DAYS = 14.0
DECAY_LAMBDA = math.log(2) / HALF_LIFE_DAYS

SIMILARITY_WEIGHT = 0.4
RECENCY_WEIGHT = 0.3
FREQUENCY_WEIGHT = 0.3


@dataclass(slots=True)
class ScoredMemory:
    memory: "MemoryRecord"
    similarity: float
    recency: float
    frequency: float
    blended: float


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if not left or not right or len(left) != len(right):
        return 0.0
    dot = 0.0
    left_norm = 0.0
    right_norm = 0.0
    for a, b in zip(left, right):
        dot += a * b
        left_norm += a * a
        right_norm += b * b
    if left_norm <= 0.0 or right_norm <= 0.0:
        return 0.0
    return dot / (math.sqrt(left_norm) * math.sqrt(right_norm))


def recency_score(created_at: datetime, now: datetime) -> float:
    age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
    return math.exp(-DECAY_LAMBDA * age_days)


def compute_blended_scores(candidates: Sequence["MemoryRecord"], now: datetime) -> list[ScoredMemory]:
    """Rank candidates by ``0.4*similarity + 0.3*recency + 0.3*frequency``.

    Frequency is relative to the candidate set: each entity ref is counted across all
    candidates, a candidate scores the mean count of its refs, normalized by the largest count.
    """
    ref_counts: Counter[str] = Counter()
    for memory in candidates:
        ref_counts.update(memory.metadata.entity_refs)
    max_count = max(1, max(ref_counts.values(), default=0))

    scored: list[ScoredMemory] = []
    for memory in candidates:
        similarity = float(memory.similarity or 0.0)
        recency = recency_score(memory.created_at, now)
        refs = memory.metadata.entity_refs
        if refs:
            frequency = (sum(ref_counts[ref] for ref in refs) / len(refs)) / max_count
        else:
            frequency = 0.0
        blended = SIMILARITY_WEIGHT * similarity + RECENCY_WEIGHT * recency + FREQUENCY_WEIGHT * frequency
        scored.append(
            ScoredMemory(
                memory=memory,
                similarity=similarity,
                recency=recency,
                frequency=frequency,
                blended=blended,
            )
        )
    scored.sort(key=lambda item: item.blended, reverse=True)
    return scored


def similarity_only(candidates: Sequence["MemoryRecord"], now: datetime) -> list[ScoredMemory]:
    scored = [
        ScoredMemory(
            memory=memory,
            similarity=float(memory.similarity or 0.0),
            recency=recency_score(memory.created_at, now),
            frequency=0.0,
            blended=float(memory.similarity or 0.0),
        )
        for memory in candidates
    ]
    scored.sort(key=lambda item: item.similarity, reverse=True)
    return scored
