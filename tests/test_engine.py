from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from companion_memory.config import Settings
from companion_memory.engine import CompanionMemoryEngine
from companion_memory.memory.state import get_path
from companion_memory.memory.store import MemoryStore
from fakes import FakeClassifier, FakeContinuity, FakeEmbedder, FakeLLM


NOW = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)


def test_turn_flow_extracts_loops_and_feeds_them_back_into_context(store: MemoryStore) -> None:
    classifier = FakeClassifier(
        [
            {"memories": [], "loops": [{"kind": "COMMITMENT", "content": "Call mom tonight", "confidence": 0.9}]},
            {"memories": [], "loops": []},
        ]
    )
    engine = CompanionMemoryEngine(
        Settings.from_env(),
        store,
        llm=classifier,
        summary_llm=FakeLLM(),
        embedder=FakeEmbedder(),
    )

    async def scenario():
        await engine.start()
        first = await engine.begin_turn("u1", "p1", "I'll call mom tonight", now=NOW)
        await engine.complete_turn(
            "u1", "p1", "I'll call mom tonight", "Say hi from me!", session_id=first.session.session_id, now=NOW
        )
        await engine.supervisor.drain(timeout=5)

        later = NOW + timedelta(minutes=1)
        second = await engine.begin_turn("u1", "p1", "what was I going to do?", now=later)
        await engine.complete_turn(
            "u1", "p1", "what was I going to do?", "", session_id=second.session.session_id, now=later
        )
        await engine.supervisor.drain(timeout=5)

        messages = await store.get_recent_messages("u1", "p1", limit=10)
        state = await engine.state.get("u1", "p1")
        await engine.close()
        return first, second, messages, state.state

    first, second, messages, state = asyncio.run(scenario())

    assert first.is_session_start is True
    assert first.context.commitments == []
    assert second.is_session_start is False
    assert second.session.session_id == first.session.session_id
    assert second.session.turn_count == 2
    assert second.context.commitments == ["Call mom tonight"]
    assert [message.role for message in messages] == ["user", "assistant", "user"]
    assert len(classifier.calls) == 2
    assert get_path(state, "diagnostics.background.submitted") >= 1
    assert engine.supervisor.submit("late", lambda: asyncio.sleep(0)) is None


def test_curation_failure_is_recorded_in_session_state(store: MemoryStore) -> None:
    engine = CompanionMemoryEngine(Settings.from_env(), store, llm=FakeClassifier(), summary_llm=FakeLLM())

    async def failing_curation(owner_id, persona_id, *, now=None):  # type: ignore[no-untyped-def]
        raise RuntimeError("curator exploded")

    engine.curator.auto_curate_maybe = failing_curation  # type: ignore[method-assign]

    async def scenario():
        turn = await engine.begin_turn("u1", "p1", "hello there", now=NOW)
        await engine.complete_turn("u1", "p1", "hello there", "Hi!", session_id=turn.session.session_id, now=NOW)
        await engine.supervisor.drain(timeout=5)
        state = await engine.state.get("u1", "p1")
        await engine.close()
        return state.state

    state = asyncio.run(scenario())

    assert get_path(state, "diagnostics.curator.lastError") == "curator exploded"
    assert get_path(state, "diagnostics.curator.lastErrorAt").startswith("2026-03-14T18:00:00")
    assert get_path(state, "diagnostics.background.succeeded") == 0
    assert get_path(state, "diagnostics.judge.classifierOk") is True


def test_start_checks_continuity_health_without_failing(store: MemoryStore, caplog) -> None:
    continuity = FakeContinuity(healthy=False)
    engine = CompanionMemoryEngine(
        Settings.from_env(), store, llm=FakeClassifier(), summary_llm=FakeLLM(), continuity=continuity
    )

    async def scenario():
        await engine.start()
        await engine.close()

    with caplog.at_level(logging.WARNING, logger="companion_memory"):
        asyncio.run(scenario())

    assert continuity.health_calls == 1
    assert "Continuity service unhealthy at startup" in caplog.text
