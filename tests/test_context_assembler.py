from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from companion_memory.context.assembler import ContextAssembler, cap_relevant, format_session_summary, is_placeholder
from companion_memory.context.payload import ContextMemory
from companion_memory.memory.models import MemoryMetadata
from companion_memory.memory.service import MemoryService
from companion_memory.memory.state import SessionStateService
from companion_memory.memory.store import MemoryStore
from fakes import FakeContinuity, FakeEmbedder


NOW = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)


def _assembler(store: MemoryStore, **kwargs) -> ContextAssembler:  # type: ignore[no-untyped-def]
    return ContextAssembler(
        store,
        MemoryService(store, FakeEmbedder()),
        SessionStateService(store),
        **kwargs,
    )


async def _seed_library(store: MemoryStore) -> None:
    service = MemoryService(store, FakeEmbedder())
    contents = {
        "PROFILE": ["Works night shifts", "Drinks green tea", "Lives near the river", "Walks every evening"],
        "PEOPLE": ["Sarah is their sister", "Ravi is their manager", "Ana is their neighbor", "Tom is their cousin"],
        "PROJECT": ["Writing a walking guide", "Training for a 10k", "Learning Spanish", "Fixing an old bike"],
    }
    minute = 0
    for memory_type, texts in contents.items():
        for text in texts:
            minute += 1
            await service.store_memory("u1", memory_type, text, {"source": "judge"}, now=NOW - timedelta(minutes=minute))


def test_relevant_memories_respect_type_caps(store: MemoryStore) -> None:
    assembler = _assembler(store)

    async def scenario():
        await _seed_library(store)
        return await assembler.build_context("u1", "p1", "going for an evening walk", now=NOW)

    payload = asyncio.run(scenario())

    counts: dict[str, int] = {}
    for memory in payload.relevant_memories:
        counts[memory.memory_type] = counts.get(memory.memory_type, 0) + 1
    assert len(payload.relevant_memories) == 8
    assert counts == {"PROFILE": 2, "PEOPLE": 3, "PROJECT": 3}
    assert payload.source == "local"
    assert payload.fallback_reason == ""
    assert all(memory.score is not None for memory in payload.relevant_memories)


def test_pinned_memories_form_the_foundation_and_are_not_repeated(store: MemoryStore) -> None:
    assembler = _assembler(store)

    async def scenario():
        service = assembler.memory_service
        await service.seed_memory("u1", "PROFILE", "Is vegetarian", now=NOW)
        await service.store_memory("u1", "PROFILE", "Cooks vegetarian curry", {"source": "judge"}, now=NOW)
        return await assembler.build_context("u1", "p1", "what should I cook as a vegetarian", now=NOW)

    payload = asyncio.run(scenario())

    assert [memory.content for memory in payload.foundation_memories] == ["Is vegetarian"]
    assert [memory.content for memory in payload.relevant_memories] == ["Cooks vegetarian curry"]
    assert payload.render_sections()[0] == "FOUNDATION:\n- Is vegetarian"


def test_entity_cards_collect_important_facts_about_referenced_entities(store: MemoryStore) -> None:
    assembler = _assembler(store)

    async def scenario():
        await assembler.memory_service.store_memory(
            "u1",
            "PEOPLE",
            "Sarah is their sister",
            {"source": "judge", "entityRefs": ["person:sarah"]},
            now=NOW,
        )
        # rows without an embedding never come back from search but still feed cards
        for content, importance in (("Sarah visits every Sunday", 2), ("Sarah likes jazz", 1)):
            await store.upsert_memory(
                owner_id="u1",
                persona_scope=None,
                memory_type="PEOPLE",
                content=content,
                memory_key=None,
                metadata=MemoryMetadata.from_dict(
                    {"source": "judge", "entityRefs": ["person:sarah"], "importance": importance}
                ),
                now=NOW,
            )
        return await assembler.build_context("u1", "p1", "my sister is coming over", now=NOW)

    payload = asyncio.run(scenario())

    assert payload.entity_cards == ["[person:sarah]: Sarah visits every Sunday"]


def test_loop_sections_are_capped_per_kind(store: MemoryStore) -> None:
    assembler = _assembler(store)

    async def scenario():
        for index in range(7):
            await store.insert_loop(
                owner_id="u1",
                persona_id="p1",
                content=f"Commitment number {index}",
                kind="COMMITMENT",
                dedupe_key=f"commitment {index}",
                now=NOW - timedelta(minutes=index),
            )
        for index in range(4):
            await store.insert_loop(
                owner_id="u1",
                persona_id="p1",
                content=f"Thread number {index}",
                kind="THREAD",
                dedupe_key=f"thread {index}",
                now=NOW - timedelta(minutes=index),
            )
        await store.insert_loop(
            owner_id="u1", persona_id="p1", content="Night shifts drain me", kind="FRICTION", dedupe_key="shifts", now=NOW
        )
        return await assembler.build_context("u1", "p1", "hello", now=NOW)

    payload = asyncio.run(scenario())

    assert payload.commitments == [f"Commitment number {index}" for index in range(5)]
    assert len(payload.threads) == 3
    assert payload.frictions == ["Night shifts drain me"]
    assert payload.habits == []


def test_recent_wins_skip_legacy_and_old_completions(store: MemoryStore) -> None:
    assembler = _assembler(store)

    async def scenario():
        cases = [
            ("Went for a run", NOW - timedelta(hours=1), "done"),
            ("[win] imported from the old tracker", NOW - timedelta(hours=2), "done"),
            ("Called the dentist", NOW - timedelta(hours=50), "done"),
            ("Walk at 6pm", NOW - timedelta(hours=3), "deduped"),
        ]
        for content, completed_at, resolution in cases:
            loop = await store.insert_loop(
                owner_id="u1",
                persona_id="p1",
                content=content,
                kind="COMMITMENT",
                dedupe_key=content.lower(),
                now=completed_at - timedelta(hours=1),
            )
            await store.complete_loop(loop.loop_id, completed_at=completed_at, resolution=resolution)
        return await assembler.build_context("u1", "p1", "hello", now=NOW)

    payload = asyncio.run(scenario())

    assert payload.recent_wins == ["Went for a run"]
    assert payload.commitments == []


def test_rolling_summary_only_for_the_matching_session(store: MemoryStore) -> None:
    assembler = _assembler(store)
    states = SessionStateService(store)

    async def scenario():
        session = await store.create_session("u1", "p1", now=NOW)
        await states.update(
            "u1",
            "p1",
            lambda state: state.update({"rollingSummarySessionId": session.session_id}),
            rolling_summary="They are stressed about night shifts.",
            now=NOW,
        )
        current = await assembler.build_context(
            "u1", "p1", "hello", session_id=session.session_id, is_session_start=False, now=NOW
        )
        other = await store.create_session("u1", "p2", now=NOW)
        foreign = await assembler.build_context(
            "u1", "p1", "hello", session_id=other.session_id, is_session_start=False, now=NOW
        )
        return current, foreign

    current, foreign = asyncio.run(scenario())

    assert current.rolling_summary == "They are stressed about night shifts."
    assert "CONVERSATION SO FAR:\nThey are stressed about night shifts." in current.render_sections()
    assert foreign.rolling_summary == ""


def test_previous_session_summary_is_shown_at_session_start(store: MemoryStore) -> None:
    assembler = _assembler(store)

    async def scenario():
        old = await store.create_session("u1", "p1", now=NOW - timedelta(days=1))
        await store.end_session(old.session_id, ended_at=NOW - timedelta(days=1) + timedelta(minutes=20))
        await store.upsert_session_summary(
            session_id=old.session_id,
            owner_id="u1",
            persona_id="p1",
            summary={
                "one_liner": "Talked through a rough week at work.",
                "open_loops": ["Whether to ask for day shifts"],
                "commitments": ["Walk at 6pm"],
                "tone": "tired",
            },
            metadata={"parse_error": False},
            now=NOW - timedelta(days=1),
        )
        current = await store.create_session("u1", "p1", now=NOW)
        start = await assembler.build_context("u1", "p1", "hi again", session_id=current.session_id, now=NOW)
        await store.save_message("u1", "p1", "user", "hi again", created_at=NOW)
        middle = await assembler.build_context("u1", "p1", "hi again", session_id=current.session_id, now=NOW)
        return start, middle

    start, middle = asyncio.run(scenario())

    assert start.is_session_start is True
    assert start.session_summary.splitlines() == [
        "Talked through a rough week at work.",
        "Open: Whether to ask for day shifts",
        "They said they would: Walk at 6pm",
        "Tone: tired",
    ]
    assert any(section.startswith("LAST SESSION:") for section in start.render_sections())
    assert middle.is_session_start is False
    assert not any(section.startswith("LAST SESSION:") for section in middle.render_sections())
    assert middle.recent_messages[0]["content"] == "hi again"


def test_remote_failures_fall_back_to_the_local_path(store: MemoryStore) -> None:
    cases = [
        (FakeContinuity(brief_delay=1.0), "timeout"),
        (FakeContinuity(brief_error=RuntimeError("brief exploded")), "error: brief exploded"),
        (FakeContinuity(brief_payload=None), "empty"),
    ]

    async def scenario():
        results = []
        for continuity, _ in cases:
            assembler = _assembler(store, continuity=continuity, remote_enabled=True, remote_timeout_seconds=0.1)
            results.append(await assembler.build_context("u1", "p1", "hello", now=NOW))
        return results

    payloads = asyncio.run(scenario())

    for payload, (_, reason) in zip(payloads, cases):
        assert payload.source == "local"
        assert payload.fallback_reason == reason


def test_remote_brief_is_mapped_into_the_payload(store: MemoryStore) -> None:
    continuity = FakeContinuity(
        brief_payload={
            "facts": [
                {"type": "PROFILE", "content": "Works nights"},
                "Likes tea",
                {"type": "HOBBY", "content": "Plays chess"},
            ],
            "currentFocus": "exam prep",
            "contextAnchors": {"timeGapDescription": "two days since the last chat"},
            "commitments": ["Call mom", {"text": "call mom!"}, "Gym at 7"],
            "openLoops": ["Moving flats"],
            "recentWins": ["[win] legacy import", "Ran 5k"],
        }
    )
    assembler = _assembler(store, continuity=continuity, remote_enabled=True)

    async def scenario():
        await assembler.memory_service.seed_memory("u1", "PROFILE", "Is vegetarian", now=NOW)
        return await assembler.build_context("u1", "p1", "  hello   there ", now=NOW)

    payload = asyncio.run(scenario())

    assert payload.source == "remote"
    assert continuity.brief_calls[0]["userId"] == "u1"
    assert continuity.brief_calls[0]["transcript"] == "hello there"
    assert [memory.content for memory in payload.relevant_memories] == ["Works nights", "Likes tea"]
    assert [memory.content for memory in payload.foundation_memories] == ["Is vegetarian"]
    assert payload.situational == ["Current focus: exam prep", "Time gap: two days since the last chat"]
    assert payload.commitments == ["Call mom", "Gym at 7"]
    assert payload.threads == ["Moving flats"]
    assert payload.recent_wins == ["Ran 5k"]
    assert payload.to_dict()["source"] == "remote"


def test_session_start_detection_counts_messages_since_session_start(store: MemoryStore) -> None:
    assembler = _assembler(store)

    async def scenario():
        await store.save_message("u1", "p1", "user", "from yesterday", created_at=NOW - timedelta(days=1))
        session = await store.create_session("u1", "p1", now=NOW)
        fresh = await assembler.detect_session_start("u1", "p1", session)
        await store.save_message("u1", "p1", "user", "hi", created_at=NOW)
        after = await assembler.detect_session_start("u1", "p1", session)
        return fresh, after

    assert asyncio.run(scenario()) == (True, False)


def test_helpers() -> None:
    assert is_placeholder("None.")
    assert is_placeholder("  ")
    assert not is_placeholder("Talked about work")
    assert format_session_summary({"one_liner": "n/a"}) == ""
    selected = cap_relevant(
        [
            ContextMemory(memory_id="1", memory_type="PROFILE", content="Likes tea"),
            ContextMemory(memory_id="2", memory_type="PROFILE", content="likes tea!"),
            ContextMemory(memory_id="3", memory_type="PROFILE", content="Is vegetarian"),
        ],
        exclude_content=["Is vegetarian"],
    )
    assert [memory.memory_id for memory in selected] == ["1"]
