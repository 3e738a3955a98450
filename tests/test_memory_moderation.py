from __future__ import annotations

from companion_memory.config import Settings
from companion_memory.memory.moderation import (
    MemoryModerationInput,
    MemoryModerationPolicy,
    is_meta_content,
)


def _input(memory_type: str, content: str, *, confidence: float | None = 0.9, window: str = "") -> MemoryModerationInput:
    return MemoryModerationInput(
        memory_type=memory_type,
        content=content,
        confidence=confidence,
        window_text=window or content,
    )


def test_people_memory_needs_relationship_term_and_window_cue() -> None:
    policy = MemoryModerationPolicy()

    accepted = policy.evaluate(_input("PEOPLE", "Sarah is their sister", window="Sarah is my sister, she visits Sundays"))
    no_term = policy.evaluate(_input("PEOPLE", "Sarah likes pizza", window="Sarah is my sister and likes pizza"))
    no_cue = policy.evaluate(_input("PEOPLE", "Sarah is a friend", window="Sarah is a friend from work"))

    assert accepted.accepted
    assert no_term.reason == "people_without_relationship"
    assert no_cue.reason == "people_without_window_cue"


def test_possessive_cue_counts_as_relationship_window() -> None:
    policy = MemoryModerationPolicy()

    decision = policy.evaluate(_input("PEOPLE", "Ravi is their manager", window="ravi's my manager and he is strict"))

    assert decision.accepted


def test_greeting_the_persona_is_not_a_profile_fact() -> None:
    policy = MemoryModerationPolicy(persona_name="Sophie")

    assert policy.evaluate(_input("PROFILE", "Hey Sophie")).reason == "persona_self_profile"
    assert policy.evaluate(_input("PROFILE", "sophie")).reason == "persona_self_profile"
    assert policy.evaluate(_input("PROFILE", "Works as a nurse")).accepted


def test_meta_and_low_confidence_candidates_are_rejected() -> None:
    policy = MemoryModerationPolicy(min_confidence=0.5)

    assert policy.evaluate(_input("PROFILE", "User is testing the memory system")).reason == "meta_content"
    assert policy.evaluate(_input("PROFILE", "Works as a nurse", confidence=0.2)).reason == "confidence_below_threshold"
    assert policy.evaluate(_input("PROFILE", "Works as a nurse", confidence=None)).accepted


def test_shape_checks_run_first() -> None:
    policy = MemoryModerationPolicy()

    assert policy.evaluate(_input("HOBBY", "Plays chess")).reason == "unknown_type"
    assert policy.evaluate(_input("PROFILE", " a ")).reason == "empty_content"
    assert policy.evaluate(_input("PROJECT", "x" * 400)).reason == "content_too_long"


def test_is_meta_content_patterns() -> None:
    assert is_meta_content("this is just a test")
    assert is_meta_content("They asked you to remember their birthday")
    assert not is_meta_content("Is training for a marathon in May")


def test_policy_from_settings_uses_judge_threshold_and_persona(monkeypatch) -> None:
    monkeypatch.setenv("JUDGE_MIN_CONFIDENCE", "0.7")
    monkeypatch.setenv("PERSONA_NAME", "Sophie")
    settings = Settings.from_env()

    policy = MemoryModerationPolicy.from_settings(settings)

    assert policy.min_confidence == 0.7
    assert policy.evaluate(_input("PROFILE", "Hi Sophie!")).reason == "persona_self_profile"
