from __future__ import annotations

from pathlib import Path

import pytest

from companion_memory.config import Settings


_KEYS = (
    "MEMORY_BACKEND",
    "MEMORY_POSTGRES_DSN",
    "DATABASE_URL",
    "SQLITE_PATH",
    "LLM_JUDGE_MODEL",
    "LLM_SUMMARY_MODEL",
    "EMBEDDING_BASE_URL",
    "LLM_BASE_URL",
    "CONTINUITY_BASE_URL",
    "FEATURE_CONTINUITY_BRIEF",
    "FEATURE_CONTINUITY_INGEST",
    "SESSION_ACTIVE_WINDOW_SECONDS",
    "JUDGE_MIN_CONFIDENCE",
    "PERSONA_NAME",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):  # type: ignore[no-untyped-def]
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)
        monkeypatch.delenv(f"\ufeff{key}", raising=False)


def test_defaults() -> None:
    settings = Settings.from_env()

    assert settings.memory_backend == "sqlite"
    assert settings.sqlite_path == Path("./data/companion_memory.db")
    assert settings.session_active_window_seconds == 300
    assert settings.curator_min_interval_hours == 24.0
    assert settings.rolling_summary_every_n_turns == 4
    assert settings.feature_continuity_brief is False
    assert settings.llm_summary_model == "gpt-4o-mini"
    settings.validate()


def test_env_overrides_and_aliases(monkeypatch) -> None:
    monkeypatch.setenv("MEMORY_BACKEND", "Postgres")
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/companion")
    monkeypatch.setenv("LLM_JUDGE_MODEL", "llama3.1")
    monkeypatch.setenv("LLM_BASE_URL", "http://llm.internal/v1")
    monkeypatch.setenv("SESSION_ACTIVE_WINDOW_SECONDS", "600")
    monkeypatch.setenv("FEATURE_ENTITY_PIPELINE", "off")

    settings = Settings.from_env()

    assert settings.memory_backend == "postgres"
    assert settings.postgres_dsn == "postgresql://localhost/companion"
    assert settings.llm_summary_model == "llama3.1"
    assert settings.embedding_base_url == "http://llm.internal/v1"
    assert settings.session_active_window_seconds == 600
    assert settings.feature_entity_pipeline is False
    settings.validate()


def test_bom_prefixed_keys_are_read(monkeypatch) -> None:
    monkeypatch.setenv("\ufeffPERSONA_NAME", "Sophie")

    assert Settings.from_env().persona_name == "Sophie"


def test_bad_numbers_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("SESSION_ACTIVE_WINDOW_SECONDS", "five minutes")
    monkeypatch.setenv("JUDGE_MIN_CONFIDENCE", "high")

    settings = Settings.from_env()

    assert settings.session_active_window_seconds == 300
    assert settings.judge_min_confidence == 0.4


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"MEMORY_BACKEND": "mongo"}, "MEMORY_BACKEND"),
        ({"MEMORY_BACKEND": "postgres"}, "MEMORY_POSTGRES_DSN"),
        ({"FEATURE_CONTINUITY_INGEST": "1"}, "CONTINUITY_BASE_URL"),
        ({"SESSION_ACTIVE_WINDOW_SECONDS": "10"}, "SESSION_ACTIVE_WINDOW_SECONDS"),
        ({"JUDGE_MIN_CONFIDENCE": "1.5"}, "JUDGE_MIN_CONFIDENCE"),
    ],
)
def test_validate_rejects_bad_settings(monkeypatch, env, message) -> None:  # type: ignore[no-untyped-def]
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()
