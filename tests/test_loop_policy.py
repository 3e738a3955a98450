from __future__ import annotations

from datetime import datetime, timedelta, timezone

from companion_memory.memory.loop_policy import (
    classify_loop_kind,
    find_completed_commitment,
    is_completion_report,
    loop_signature,
    normalize_loop_kind,
    should_downgrade_commitment,
)
from companion_memory.memory.models import LoopRecord


NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


def _loop(loop_id: str, content: str, *, kind: str = "COMMITMENT", minutes_ago: int = 0) -> LoopRecord:
    return LoopRecord(
        loop_id=loop_id,
        owner_id="u1",
        persona_id="p1",
        content=content,
        kind=kind,
        status="PENDING",
        dedupe_key=content.lower(),
        created_at=NOW - timedelta(minutes=minutes_ago),
    )


def test_hedged_commitment_without_timebox_becomes_thread() -> None:
    assert should_downgrade_commitment("I might go for a walk")
    assert classify_loop_kind("COMMITMENT", "I might go for a walk") == "THREAD"
    assert classify_loop_kind("commitment", "Maybe I could call my sister someday") == "THREAD"


def test_timeboxed_or_explicit_commitments_stay() -> None:
    assert classify_loop_kind("COMMITMENT", "I will walk at 7:30am tomorrow") == "COMMITMENT"
    assert classify_loop_kind("COMMITMENT", "Maybe I'll call mom tonight") == "COMMITMENT"
    assert classify_loop_kind("COMMITMENT", "I might finish the report by Friday, I promise") == "COMMITMENT"
    assert classify_loop_kind("COMMITMENT", "Go for a walk") == "COMMITMENT"


def test_other_kinds_are_never_downgraded_and_unknown_kinds_become_threads() -> None:
    assert classify_loop_kind("FRICTION", "Might be burning out at work") == "FRICTION"
    assert normalize_loop_kind("habit") == "HABIT"
    assert normalize_loop_kind("todo") == "THREAD"
    assert normalize_loop_kind(None) == "THREAD"


def test_loop_signature_prefers_dedupe_key() -> None:
    assert loop_signature("Walk at 7!", None) == "walk at 7"
    assert loop_signature("Walk at 7!", "Evening Walk") == "evening_walk"
    assert loop_signature("Walk at 7!", "  ") == "walk at 7"


def test_completion_reports() -> None:
    assert is_completion_report("Done with it")
    assert is_completion_report("I did my walk today")
    assert is_completion_report("we finally went to the gym")
    assert not is_completion_report("I want to walk later")


def test_explicit_done_with_single_pending_commitment_completes_it() -> None:
    pending = [_loop("a", "Go for a walk at 6pm"), _loop("t", "Career worries", kind="THREAD")]

    assert find_completed_commitment("done!", pending) is pending[0]


def test_past_tense_report_needs_keyword_overlap() -> None:
    pending = [_loop("walk", "Go for a walk at 6pm", minutes_ago=5), _loop("call", "Call the dentist", minutes_ago=10)]

    assert find_completed_commitment("I did my walk today", pending) is pending[0]
    assert find_completed_commitment("I called the dentist", pending) is pending[1]
    assert find_completed_commitment("I did some shopping", pending) is None
    assert find_completed_commitment("Thinking about my walk", pending) is None


def test_no_pending_commitments_means_nothing_to_complete() -> None:
    assert find_completed_commitment("done", []) is None
    assert find_completed_commitment("done", [_loop("t", "Career worries", kind="THREAD")]) is None
