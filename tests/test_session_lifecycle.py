from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from companion_memory.memory.state import SessionStateService, get_path
from companion_memory.memory.store import MemoryStore
from companion_memory.session.lifecycle import SessionLifecycleManager
from companion_memory.session.summarizer import (
    SessionSummarizer,
    fallback_session_summary,
    normalize_session_summary,
)
from companion_memory.tasks import BackgroundTaskSupervisor
from fakes import FakeContinuity, FakeLLM


NOW = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)

SUMMARY_PAYLOAD = {
    "one_liner": "Planned an evening walk after a rough shift.",
    "what_mattered": ["Work stress", "Work stress", "Sleep"],
    "open_loops": ["Whether to switch to day shifts"],
    "commitments": ["Walk at 6pm"],
    "people": ["Sarah"],
    "tone": "tired but hopeful",
}


def _manager(store: MemoryStore, *, llm: FakeLLM | None = None, continuity=None, supervisor=None, **kwargs):  # type: ignore[no-untyped-def]
    return SessionLifecycleManager(
        store,
        SessionStateService(store),
        summarizer=SessionSummarizer(store, llm or FakeLLM(json_payload=SUMMARY_PAYLOAD)),
        continuity=continuity,
        supervisor=supervisor,
        active_window_seconds=300,
        **kwargs,
    )


def test_turns_within_window_share_one_session(store: MemoryStore) -> None:
    manager = _manager(store)

    async def scenario():
        first = await manager.ensure_active_session("u1", "p1", now=NOW)
        await store.save_message("u1", "p1", "user", "hi", created_at=NOW)
        second = await manager.ensure_active_session("u1", "p1", now=NOW + timedelta(minutes=2))
        return first, second

    first, second = asyncio.run(scenario())

    assert first.session_id == second.session_id
    assert first.turn_count == 1
    assert second.turn_count == 2
    assert second.last_activity_at == NOW + timedelta(minutes=2)
    assert second.is_active


def test_idle_session_is_closed_at_last_user_message_and_summarized(store: MemoryStore) -> None:
    manager = _manager(store)

    async def scenario():
        first = await manager.ensure_active_session("u1", "p1", now=NOW)
        await store.save_message("u1", "p1", "user", "rough shift today", created_at=NOW + timedelta(minutes=1))
        await store.save_message("u1", "p1", "assistant", "want to walk it off?", created_at=NOW + timedelta(minutes=1))
        second = await manager.ensure_active_session("u1", "p1", now=NOW + timedelta(minutes=20))
        closed = await store.get_session(first.session_id)
        summary = await manager.get_latest_session_summary("u1", "p1")
        return first, second, closed, summary

    first, second, closed, summary = asyncio.run(scenario())

    assert second.session_id != first.session_id
    assert second.turn_count == 1
    assert closed is not None and closed.ended_at == NOW + timedelta(minutes=1)
    assert summary is not None and summary.session_id == first.session_id
    assert summary.summary["one_liner"] == "Planned an evening walk after a rough shift."
    assert summary.summary["what_mattered"] == ["Work stress", "Sleep"]
    assert summary.metadata["parse_error"] is False


def test_summary_falls_back_when_model_fails(store: MemoryStore) -> None:
    manager = _manager(store, llm=FakeLLM(error=RuntimeError("model offline")))

    async def scenario():
        first = await manager.ensure_active_session("u1", "p1", now=NOW)
        await store.save_message("u1", "p1", "user", "my sister visits on Sunday", created_at=NOW)
        await manager.close_stale_session_if_any("u1", "p1", now=NOW + timedelta(minutes=10))
        return await store.get_session_summary(first.session_id)

    summary = asyncio.run(scenario())

    assert summary is not None
    assert summary.metadata["parse_error"] is True
    assert summary.metadata["error"] == "model offline"
    assert summary.summary["one_liner"] == "Talked about: my sister visits on Sunday"
    assert summary.summary["commitments"] == []


def test_invalid_summary_json_is_treated_as_parse_error(store: MemoryStore) -> None:
    manager = _manager(store, llm=FakeLLM(json_payload={"tone": "calm"}))

    async def scenario():
        first = await manager.ensure_active_session("u1", "p1", now=NOW)
        await store.save_message("u1", "p1", "user", "quick check in", created_at=NOW)
        await manager.close_stale_session_if_any("u1", "p1", now=NOW + timedelta(minutes=10))
        return await store.get_session_summary(first.session_id)

    summary = asyncio.run(scenario())

    assert summary is not None
    assert summary.metadata == {"parse_error": True, "model": "fake-summary", "error": "invalid_json"}


def test_session_without_messages_gets_no_summary(store: MemoryStore) -> None:
    llm = FakeLLM(json_payload=SUMMARY_PAYLOAD)
    manager = _manager(store, llm=llm)

    async def scenario():
        first = await manager.ensure_active_session("u1", "p1", now=NOW)
        closed = await manager.close_stale_session_if_any("u1", "p1", now=NOW + timedelta(minutes=6))
        return first, closed, await store.get_session_summary(first.session_id)

    first, closed, summary = asyncio.run(scenario())

    assert closed is not None and closed.ended_at == first.last_activity_at
    assert summary is None
    assert llm.json_calls == []


def test_active_session_is_not_closed_early(store: MemoryStore) -> None:
    manager = _manager(store)

    async def scenario():
        await manager.ensure_active_session("u1", "p1", now=NOW)
        await store.save_message("u1", "p1", "user", "still here", created_at=NOW + timedelta(minutes=3))
        return await manager.close_stale_session_if_any("u1", "p1", now=NOW + timedelta(minutes=7))

    assert asyncio.run(scenario()) is None


def test_ingest_failure_is_recorded_in_session_state(store: MemoryStore) -> None:
    continuity = FakeContinuity(ingest_ok=False)
    manager = _manager(store, continuity=continuity, summary_enabled=False, ingest_enabled=True)

    async def scenario():
        first = await manager.ensure_active_session("u1", "p1", now=NOW)
        await store.save_message("u1", "p1", "user", "going to bed early", created_at=NOW)
        await manager.close_stale_session_if_any("u1", "p1", now=NOW + timedelta(minutes=30))
        state = await SessionStateService(store).get("u1", "p1")
        return first, state.state

    first, state = asyncio.run(scenario())

    assert len(continuity.ingest_calls) == 1
    call = continuity.ingest_calls[0]
    assert call["session_id"] == first.session_id
    assert [message["content"] for message in call["messages"]] == ["going to bed early"]
    assert call["window"]["userId"] == "u1"
    failures = get_path(state, "diagnostics.continuityIngest.failures")
    assert isinstance(failures, list) and len(failures) == 1
    trace = get_path(state, "diagnostics.continuityIngest.lastTrace")
    assert trace["ok"] is False
    assert trace["status"] == 503
    assert trace["sessionId"] == first.session_id


def test_old_ingest_failures_are_pruned_after_a_day(store: MemoryStore) -> None:
    continuity = FakeContinuity(ingest_ok=True)
    manager = _manager(store, continuity=continuity, summary_enabled=False, ingest_enabled=True)

    async def scenario():
        await SessionStateService(store).update(
            "u1",
            "p1",
            lambda state: state.update(
                {"diagnostics": {"continuityIngest": {"failures": ["2026-03-12T10:00:00+00:00", "garbage"]}}}
            ),
            now=NOW,
        )
        await manager.ensure_active_session("u1", "p1", now=NOW)
        await store.save_message("u1", "p1", "user", "hello", created_at=NOW)
        await manager.close_stale_session_if_any("u1", "p1", now=NOW + timedelta(minutes=30))
        return (await SessionStateService(store).get("u1", "p1")).state

    state = asyncio.run(scenario())

    assert get_path(state, "diagnostics.continuityIngest.failures") == []
    assert get_path(state, "diagnostics.continuityIngest.lastTrace.ok") is True


def test_close_side_effects_run_on_the_supervisor(store: MemoryStore) -> None:
    async def scenario():
        supervisor = BackgroundTaskSupervisor(max_concurrency=2, default_timeout=5)
        manager = _manager(store, supervisor=supervisor)
        first = await manager.ensure_active_session("u1", "p1", now=NOW)
        await store.save_message("u1", "p1", "user", "see you tomorrow", created_at=NOW)
        await manager.ensure_active_session("u1", "p1", now=NOW + timedelta(hours=1))
        drained = await supervisor.drain(timeout=5)
        summary = await store.get_session_summary(first.session_id)
        return drained, summary, supervisor.diagnostics()

    drained, summary, diagnostics = asyncio.run(scenario())

    assert drained is True
    assert summary is not None
    assert diagnostics["submitted"] == 1
    assert diagnostics["succeeded"] == 1


def test_summary_normalization_helpers() -> None:
    assert normalize_session_summary({"one_liner": "  "}) is None
    normalized = normalize_session_summary({"one_liner": "x" * 300, "people": ["Ana", 3, None, "Ana"]})
    assert normalized is not None
    assert len(normalized["one_liner"]) <= 200
    assert normalized["people"] == ["Ana", "3"]
    assert normalized["open_loops"] == []
    assert fallback_session_summary([])["one_liner"] == "Short conversation with no notable topics."
