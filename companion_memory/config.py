from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    memory_backend: str
    sqlite_path: Path
    postgres_dsn: str
    sqlite_busy_timeout_ms: int
    sqlite_reset_on_schema_mismatch: bool

    llm_base_url: str
    llm_api_key: str
    llm_judge_model: str
    llm_summary_model: str
    embedding_base_url: str
    embedding_api_key: str
    embedding_model: str
    continuity_base_url: str
    continuity_tenant_id: str

    judge_timeout_seconds: float
    embedding_timeout_seconds: float
    rolling_summary_timeout_seconds: float
    session_summary_timeout_seconds: float
    summary_spine_timeout_seconds: float
    continuity_timeout_seconds: float
    background_task_timeout_seconds: float

    feature_entity_pipeline: bool
    feature_memory_curator: bool
    feature_session_summary: bool
    feature_continuity_brief: bool
    feature_continuity_ingest: bool
    feature_summary_spine: bool

    session_active_window_seconds: int
    curator_cooldown_seconds: int
    curator_min_interval_hours: float
    curator_memory_threshold: int
    rolling_summary_every_n_turns: int
    background_max_concurrency: int
    judge_min_confidence: float
    persona_name: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            memory_backend=_env_str("MEMORY_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/companion_memory.db")).expanduser(),
            postgres_dsn=_env_str("MEMORY_POSTGRES_DSN", "", aliases=("DATABASE_URL",)),
            sqlite_busy_timeout_ms=_env_int("MEMORY_SQLITE_BUSY_TIMEOUT_MS", 5000),
            sqlite_reset_on_schema_mismatch=_env_bool("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", False),
            llm_base_url=_env_str("LLM_BASE_URL", "http://127.0.0.1:11434/v1"),
            llm_api_key=_env_str("LLM_API_KEY", ""),
            llm_judge_model=_env_str("LLM_JUDGE_MODEL", "gpt-4o-mini"),
            llm_summary_model=_env_str("LLM_SUMMARY_MODEL", "", aliases=("LLM_JUDGE_MODEL",)) or "gpt-4o-mini",
            embedding_base_url=_env_str("EMBEDDING_BASE_URL", "", aliases=("LLM_BASE_URL",)) or "http://127.0.0.1:11434/v1",
            embedding_api_key=_env_str("EMBEDDING_API_KEY", "", aliases=("LLM_API_KEY",)),
            embedding_model=_env_str("EMBEDDING_MODEL", "text-embedding-3-small"),
            continuity_base_url=_env_str("CONTINUITY_BASE_URL", ""),
            continuity_tenant_id=_env_str("CONTINUITY_TENANT_ID", "default"),
            judge_timeout_seconds=_env_float("JUDGE_TIMEOUT_SECONDS", 8.0),
            embedding_timeout_seconds=_env_float("EMBEDDING_TIMEOUT_SECONDS", 5.0),
            rolling_summary_timeout_seconds=_env_float("ROLLING_SUMMARY_TIMEOUT_SECONDS", 4.0),
            session_summary_timeout_seconds=_env_float("SESSION_SUMMARY_TIMEOUT_SECONDS", 20.0),
            summary_spine_timeout_seconds=_env_float("SUMMARY_SPINE_TIMEOUT_SECONDS", 20.0),
            continuity_timeout_seconds=_env_float("CONTINUITY_TIMEOUT_SECONDS", 3.0),
            background_task_timeout_seconds=_env_float("BACKGROUND_TASK_TIMEOUT_SECONDS", 60.0),
            feature_entity_pipeline=_env_bool("FEATURE_ENTITY_PIPELINE", True),
            feature_memory_curator=_env_bool("FEATURE_MEMORY_CURATOR", True),
            feature_session_summary=_env_bool("FEATURE_SESSION_SUMMARY", True),
            feature_continuity_brief=_env_bool("FEATURE_CONTINUITY_BRIEF", False),
            feature_continuity_ingest=_env_bool("FEATURE_CONTINUITY_INGEST", False),
            feature_summary_spine=_env_bool("FEATURE_SUMMARY_SPINE", True),
            session_active_window_seconds=_env_int("SESSION_ACTIVE_WINDOW_SECONDS", 300),
            curator_cooldown_seconds=_env_int("CURATOR_COOLDOWN_SECONDS", 60),
            curator_min_interval_hours=_env_float("CURATOR_MIN_INTERVAL_HOURS", 24.0),
            curator_memory_threshold=_env_int("CURATOR_MEMORY_THRESHOLD", 25),
            rolling_summary_every_n_turns=_env_int("ROLLING_SUMMARY_EVERY_N_TURNS", 4),
            background_max_concurrency=_env_int("BACKGROUND_MAX_CONCURRENCY", 4),
            judge_min_confidence=_env_float("JUDGE_MIN_CONFIDENCE", 0.4),
            persona_name=_env_str("PERSONA_NAME", ""),
        )

    def validate(self) -> None:
        if self.memory_backend not in {"sqlite", "postgres"}:
            raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
        if self.memory_backend == "postgres" and not self.postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("MEMORY_SQLITE_BUSY_TIMEOUT_MS must be >= 0")

        if not self.llm_base_url:
            raise ValueError("LLM_BASE_URL cannot be empty")
        if not self.llm_judge_model:
            raise ValueError("LLM_JUDGE_MODEL cannot be empty")
        if self.feature_continuity_brief or self.feature_continuity_ingest:
            if not self.continuity_base_url:
                raise ValueError("CONTINUITY_BASE_URL is required when continuity features are enabled")

        for name, value in (
            ("JUDGE_TIMEOUT_SECONDS", self.judge_timeout_seconds),
            ("EMBEDDING_TIMEOUT_SECONDS", self.embedding_timeout_seconds),
            ("ROLLING_SUMMARY_TIMEOUT_SECONDS", self.rolling_summary_timeout_seconds),
            ("SESSION_SUMMARY_TIMEOUT_SECONDS", self.session_summary_timeout_seconds),
            ("SUMMARY_SPINE_TIMEOUT_SECONDS", self.summary_spine_timeout_seconds),
            ("CONTINUITY_TIMEOUT_SECONDS", self.continuity_timeout_seconds),
            ("BACKGROUND_TASK_TIMEOUT_SECONDS", self.background_task_timeout_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0")

        if self.session_active_window_seconds < 30:
            raise ValueError("SESSION_ACTIVE_WINDOW_SECONDS must be >= 30")
        if self.curator_cooldown_seconds < 0:
            raise ValueError("CURATOR_COOLDOWN_SECONDS must be >= 0")
        if self.curator_min_interval_hours <= 0:
            raise ValueError("CURATOR_MIN_INTERVAL_HOURS must be > 0")
        if self.curator_memory_threshold < 1:
            raise ValueError("CURATOR_MEMORY_THRESHOLD must be >= 1")
        if self.rolling_summary_every_n_turns < 1:
            raise ValueError("ROLLING_SUMMARY_EVERY_N_TURNS must be >= 1")
        if self.background_max_concurrency < 1:
            raise ValueError("BACKGROUND_MAX_CONCURRENCY must be >= 1")
        if self.judge_min_confidence < 0.0 or self.judge_min_confidence > 1.0:
            raise ValueError("JUDGE_MIN_CONFIDENCE must be in [0, 1]")
