from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from companion_memory.memory.judge import ExtractionJudge
from companion_memory.memory.models import LOOP_COMPLETED
from companion_memory.memory.moderation import MemoryModerationPolicy
from companion_memory.memory.service import MemoryService
from companion_memory.memory.state import SessionStateService, get_path
from companion_memory.memory.store import MemoryStore
from companion_memory.memory.summaries import RollingSummarizer, SummarySpineWriter
from companion_memory.prompts.memory import SUMMARY_SPINE_SECTIONS
from fakes import FakeClassifier, FakeLLM


NOW = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)


def _judge(store: MemoryStore, classifier, **kwargs) -> ExtractionJudge:  # type: ignore[no-untyped-def]
    return ExtractionJudge(
        store,
        MemoryService(store),
        SessionStateService(store),
        classifier,
        moderation=MemoryModerationPolicy(persona_name="Sophie"),
        persona_name="Sophie",
        **kwargs,
    )


async def _turn(judge: ExtractionJudge, store: MemoryStore, text: str, now: datetime, **kwargs):  # type: ignore[no-untyped-def]
    await store.save_message("u1", "p1", "user", text, created_at=now)
    return await judge.process_turn("u1", "p1", text, "Sounds good!", now=now, **kwargs)


def test_hedged_commitment_is_written_as_thread(store: MemoryStore) -> None:
    classifier = FakeClassifier({"memories": [], "loops": [{"kind": "COMMITMENT", "content": "I might go for a walk"}]})
    judge = _judge(store, classifier)

    async def scenario():
        result = await _turn(judge, store, "I might go for a walk", NOW)
        return result, await store.list_pending_loops("u1", "p1")

    result, pending = asyncio.run(scenario())

    assert [(loop.kind, loop.content) for loop in pending] == [("THREAD", "I might go for a walk")]
    assert result.diagnostics.loops_downgraded == 1


def test_timeboxed_commitment_is_kept(store: MemoryStore) -> None:
    classifier = FakeClassifier(
        {"memories": [], "loops": [{"kind": "COMMITMENT", "content": "I will walk at 7:30am tomorrow", "confidence": 0.9}]}
    )
    judge = _judge(store, classifier)

    async def scenario():
        await _turn(judge, store, "I will walk at 7:30am tomorrow", NOW)
        return await store.list_pending_loops("u1", "p1")

    pending = asyncio.run(scenario())

    assert [loop.kind for loop in pending] == ["COMMITMENT"]


def test_loop_dedupe_is_scoped_by_kind(store: MemoryStore) -> None:
    payload = {
        "memories": [],
        "loops": [
            {"kind": "COMMITMENT", "content": "Go for a walk"},
            {"kind": "COMMITMENT", "content": "go for a walk!"},
            {"kind": "THREAD", "content": "Go for a walk"},
            {"kind": "HABIT", "content": "Evening walks", "confidence": 0.1},
        ],
    }
    judge = _judge(store, FakeClassifier(payload))

    async def scenario():
        first = await _turn(judge, store, "I should go for a walk", NOW)
        second = await _turn(judge, store, "Go for a walk, right", NOW + timedelta(minutes=1))
        return first, second, await store.list_pending_loops("u1", "p1")

    first, second, pending = asyncio.run(scenario())

    assert sorted(loop.kind for loop in pending) == ["COMMITMENT", "THREAD"]
    assert first.diagnostics.loops_written == 2
    assert first.diagnostics.loops_skipped == 1
    assert second.diagnostics.loops_written == 0


def test_completion_report_closes_commitment_and_writes_no_new_one(store: MemoryStore) -> None:
    classifier = FakeClassifier(
        [
            {"memories": [], "loops": [{"kind": "COMMITMENT", "content": "Go for a walk at 6pm"}]},
            {"memories": [], "loops": [{"kind": "COMMITMENT", "content": "Walk today"}]},
        ]
    )
    judge = _judge(store, classifier)

    async def scenario():
        await _turn(judge, store, "I'll go for a walk at 6pm", NOW)
        result = await _turn(judge, store, "I did my walk today", NOW + timedelta(hours=2))
        pending = await store.list_pending_loops("u1", "p1", kind="COMMITMENT")
        wins = await store.list_completed_loops_since("u1", "p1", kind="COMMITMENT", since=NOW)
        return result, pending, wins

    result, pending, wins = asyncio.run(scenario())

    assert result.completed is not None
    assert result.completed.content == "Go for a walk at 6pm"
    assert pending == []
    assert [loop.content for loop in wins] == ["Go for a walk at 6pm"]
    assert wins[0].status == LOOP_COMPLETED
    assert wins[0].completed_at == NOW + timedelta(hours=2)


def test_memories_are_moderated_and_merged_across_turns(store: MemoryStore) -> None:
    payload = {
        "memories": [
            {"type": "PROFILE", "content": "Works as a nurse on night shifts", "confidence": 0.9},
            {"type": "PROFILE", "content": "Hey Sophie", "confidence": 0.9},
            {
                "type": "PEOPLE",
                "content": "Sarah is their sister",
                "confidence": 0.8,
                "entityRefs": ["person:Sarah"],
                "subtype": {"entityType": "person", "factType": "relationship"},
                "importance": 2,
            },
            "not an object",
        ],
        "loops": [],
    }
    judge = _judge(store, FakeClassifier(payload))

    async def scenario():
        first = await _turn(judge, store, "Hey Sophie! Sarah is my sister, I work night shifts as a nurse", NOW)
        second = await _turn(judge, store, "Still on nights this week", NOW + timedelta(minutes=3))
        return first, second, await store.list_memories("u1")

    first, second, memories = asyncio.run(scenario())

    assert first.diagnostics.memories_created == 2
    assert first.diagnostics.memories_rejected == {"persona_self_profile": 1, "not_an_object": 1}
    assert second.diagnostics.memories_merged == 2
    assert len(memories) == 2
    sister = [memory for memory in memories if memory.memory_type == "PEOPLE"][0]
    assert sister.metadata.source == "judge"
    assert sister.metadata.entity_refs == ["person:sarah"]
    assert sister.metadata.mention_count == 2
    assert sister.persona_scope is None


def test_window_uses_recent_distinct_user_messages(store: MemoryStore) -> None:
    classifier = FakeClassifier()
    judge = _judge(store, classifier)

    async def scenario():
        await store.save_message("u1", "p1", "user", "old news", created_at=NOW - timedelta(hours=3))
        for index, text in enumerate(["one", "two", "two", "three", "four", "five"]):
            await store.save_message("u1", "p1", "user", text, created_at=NOW - timedelta(minutes=10 - index))
        await store.save_message("u1", "p1", "assistant", "not a user line", created_at=NOW)
        return await judge.build_window("u1", "p1", now=NOW)

    window = asyncio.run(scenario())

    assert window == ["two", "three", "four", "five"]


def test_classifier_failure_degrades_to_empty_and_is_recorded(store: MemoryStore) -> None:
    judge = _judge(store, FakeClassifier(error=RuntimeError("backend exploded")))

    async def scenario():
        result = await _turn(judge, store, "I will call mom tomorrow", NOW)
        state = await SessionStateService(store).get("u1", "p1")
        return result, state.state

    result, state = asyncio.run(scenario())

    assert result is not None
    assert result.memories == [] and result.loops == []
    assert result.diagnostics.error == "backend exploded"
    assert get_path(state, "diagnostics.judge.classifierOk") is False
    assert state["messageCount"] == 1
    assert state["lastUserMessage"] == "I will call mom tomorrow"


def test_classifier_timeout_is_bounded(store: MemoryStore) -> None:
    judge = _judge(store, FakeClassifier(delay=1.0), classifier_timeout_seconds=0.05)

    result = asyncio.run(_turn(judge, store, "hello there", NOW))

    assert result is not None
    assert "timeout" in result.diagnostics.error
    assert result.diagnostics.classifier_ok is False


def test_rolling_summary_refreshes_every_fourth_turn(store: MemoryStore) -> None:
    llm = FakeLLM("They planned an evening walk and talked about work stress.")
    judge = _judge(
        store,
        FakeClassifier(),
        rolling_summarizer=RollingSummarizer(store, llm),
        rolling_summary_every_n_turns=4,
    )

    async def scenario():
        session = await store.create_session("u1", "p1", now=NOW)
        calls_before_fourth = 0
        for turn in range(4):
            if turn == 3:
                calls_before_fourth = len(llm.complete_calls)
            await _turn(judge, store, f"turn number {turn}", NOW + timedelta(minutes=turn), session_id=session.session_id)
        state = await SessionStateService(store).get("u1", "p1")
        return session, calls_before_fourth, state

    session, calls_before_fourth, state = asyncio.run(scenario())

    assert calls_before_fourth == 0
    assert len(llm.complete_calls) == 1
    assert state.rolling_summary == "They planned an evening walk and talked about work stress."
    assert state.state["rollingSummarySessionId"] == session.session_id
    assert get_path(state.state, "diagnostics.rollingSummary.lastSuccessAt") is not None


def test_rolling_summary_timeout_keeps_previous_text(store: MemoryStore) -> None:
    llm = FakeLLM("never arrives", delay=1.0)
    judge = _judge(
        store,
        FakeClassifier(),
        rolling_summarizer=RollingSummarizer(store, llm),
        rolling_summary_every_n_turns=1,
        rolling_summary_timeout_seconds=0.05,
    )

    async def scenario():
        result = await _turn(judge, store, "quick hello", NOW)
        return result, await SessionStateService(store).get("u1", "p1")

    result, state = asyncio.run(scenario())

    assert result.diagnostics.rolling_summary == "timeout"
    assert state.rolling_summary == ""
    assert "timeout" in get_path(state.state, "diagnostics.rollingSummary.lastError")


def test_summary_spine_first_version_is_written_and_counter_reset(store: MemoryStore) -> None:
    llm = FakeLLM("```\nWHO THEY ARE\n- Night-shift nurse\n```")
    judge = _judge(store, FakeClassifier(), spine_writer=SummarySpineWriter(store, llm))

    async def scenario():
        result = await _turn(judge, store, "I work nights as a nurse", NOW)
        spine = await store.get_latest_summary_spine("u1")
        state = await SessionStateService(store).get("u1", "p1")
        return result, spine, state.state

    result, spine, state = asyncio.run(scenario())

    assert result.diagnostics.spine_version == 1
    assert spine is not None and spine.version == 1
    for section in SUMMARY_SPINE_SECTIONS:
        assert section.upper() in spine.content.upper()
    assert "```" not in spine.content
    assert get_path(state, "summarySpine.messagesSinceVersion") == 0
    assert get_path(state, "summarySpine.lastVersion") == 1


def test_summary_spine_waits_for_enough_new_messages(store: MemoryStore) -> None:
    llm = FakeLLM("WHO THEY ARE\n- Nurse")
    judge = _judge(store, FakeClassifier(), spine_writer=SummarySpineWriter(store, llm, refresh_threshold=20))

    async def scenario():
        await store.create_summary_spine_version("u1", "WHO THEY ARE\n- Nurse", message_count=4, now=NOW)
        await _turn(judge, store, "hi again", NOW + timedelta(minutes=1))
        return await SessionStateService(store).get("u1", "p1")

    state = asyncio.run(scenario())

    assert llm.complete_calls == []
    assert get_path(state.state, "summarySpine.messagesSinceVersion") == 2


def test_summary_helpers_are_noops_without_their_writers(store: MemoryStore) -> None:
    judge = _judge(store, FakeClassifier({"memories": [], "loops": []}))

    async def scenario():
        status = await judge.refresh_rolling_summary("u1", "p1", session_id=None, now=NOW)
        version = await judge.maybe_update_spine(
            "u1", "p1", "hello", "hi there", messages_since_version=50, now=NOW
        )
        return status, version, await store.get_latest_summary_spine("u1")

    status, version, spine = asyncio.run(scenario())

    assert status == "disabled"
    assert version is None
    assert spine is None
