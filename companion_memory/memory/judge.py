from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from ..common import as_float, as_int, collapse_spaces, normalize_content, to_iso, utc_now
from ..prompts.memory import build_judge_user_prompt, judge_schema_hint, judge_system_prompt
from .entities import sanitize_metadata_fields
from .loop_policy import classify_loop_kind, find_completed_commitment, loop_signature, normalize_loop_kind
from .models import LoopRecord, MemoryMetadata, MemoryRecord
from .moderation import MemoryModerationInput, MemoryModerationPolicy
from .service import MemoryService
from .state import SessionStateService, get_path, set_path
from .summaries import RollingSummarizer, SummarySpineWriter

logger = logging.getLogger("companion_memory")

WINDOW_MESSAGE_LIMIT = 6
WINDOW_LOOKBACK = timedelta(minutes=60)
WINDOW_MAX_LINES = 4
LAST_MESSAGE_PREVIEW_CHARS = 100
MAX_LOOP_CONTENT_CHARS = 200


class TextClassifier(Protocol):
    async def json_chat(
        self,
        messages: list[dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> dict[str, object] | None: ...


@dataclass(slots=True)
class LoopCandidate:
    kind: str
    content: str
    signature: str
    downgraded: bool = False


@dataclass(slots=True)
class JudgeDiagnostics:
    backend_name: str
    model_name: str
    latency_ms: int = 0
    classifier_ok: bool = False
    json_valid: bool = False
    error: str = ""
    window_size: int = 0
    memory_candidates: int = 0
    memories_created: int = 0
    memories_merged: int = 0
    memories_rejected: dict[str, int] = field(default_factory=dict)
    loop_candidates: int = 0
    loops_written: int = 0
    loops_skipped: int = 0
    loops_downgraded: int = 0
    completed_loop_id: str | None = None
    rolling_summary: str = "skipped"
    spine_version: int | None = None

    def to_state(self, now: datetime) -> dict[str, Any]:
        return {
            "lastRunAt": to_iso(now),
            "latencyMs": self.latency_ms,
            "classifierOk": self.classifier_ok,
            "jsonValid": self.json_valid,
            "error": self.error,
            "memoriesCreated": self.memories_created,
            "memoriesMerged": self.memories_merged,
            "loopsWritten": self.loops_written,
            "loopsSkipped": self.loops_skipped,
        }


@dataclass(slots=True)
class JudgeResult:
    memories: list[MemoryRecord]
    loops: list[LoopRecord]
    completed: LoopRecord | None
    diagnostics: JudgeDiagnostics


class ExtractionJudge:
    """Turns the recent user message window into memories and loops after each turn."""

    def __init__(
        self,
        store: Any,
        memory_service: MemoryService,
        state_service: SessionStateService,
        classifier: TextClassifier | Any,
        *,
        moderation: MemoryModerationPolicy | None = None,
        rolling_summarizer: RollingSummarizer | None = None,
        spine_writer: SummarySpineWriter | None = None,
        persona_name: str = "",
        min_loop_confidence: float = 0.4,
        classifier_timeout_seconds: float = 8.0,
        rolling_summary_timeout_seconds: float = 4.0,
        spine_timeout_seconds: float = 20.0,
        rolling_summary_every_n_turns: int = 4,
    ) -> None:
        self.store = store
        self.memory_service = memory_service
        self.state_service = state_service
        self.classifier = classifier
        self.persona_name = persona_name
        self.moderation = moderation or MemoryModerationPolicy(persona_name=persona_name)
        self.rolling_summarizer = rolling_summarizer
        self.spine_writer = spine_writer
        self.min_loop_confidence = float(min_loop_confidence)
        self.classifier_timeout_seconds = max(0.1, float(classifier_timeout_seconds))
        self.rolling_summary_timeout_seconds = max(0.1, float(rolling_summary_timeout_seconds))
        self.spine_timeout_seconds = max(0.1, float(spine_timeout_seconds))
        self.rolling_summary_every_n_turns = max(0, int(rolling_summary_every_n_turns))

    @property
    def backend_name(self) -> str:
        raw = str(getattr(self.classifier, "backend_name", "") or "").strip().lower()
        return raw or "llm"

    @property
    def model_name(self) -> str:
        return str(getattr(self.classifier, "model", "") or "").strip()

    async def build_window(
        self,
        owner_id: str,
        persona_id: str,
        *,
        now: datetime,
        fallback_text: str = "",
    ) -> list[str]:
        recent = await self.store.get_recent_messages(
            owner_id,
            persona_id,
            role="user",
            since=now - WINDOW_LOOKBACK,
            limit=WINDOW_MESSAGE_LIMIT,
        )
        seen: set[str] = set()
        newest_first: list[str] = []
        for message in recent:
            text = collapse_spaces(message.content)
            key = normalize_content(text)
            if not key or key in seen:
                continue
            seen.add(key)
            newest_first.append(text)
        window = list(reversed(newest_first))[-WINDOW_MAX_LINES:]
        if not window and collapse_spaces(fallback_text):
            window = [collapse_spaces(fallback_text)]
        return window

    async def classify(self, window: list[str], diagnostics: JudgeDiagnostics) -> dict[str, Any]:
        """Ask the classifier for ``{memories, loops}``; any failure yields empty lists."""
        empty: dict[str, Any] = {"memories": [], "loops": []}
        if not window:
            return empty
        messages = [
            {"role": "system", "content": judge_system_prompt()},
            {"role": "user", "content": build_judge_user_prompt(window, self.persona_name)},
        ]
        started = time.perf_counter()
        payload: Any = None
        try:
            payload = await asyncio.wait_for(
                self.classifier.json_chat(
                    messages,
                    schema_hint=judge_schema_hint(),
                    temperature=0.1,
                    max_output_tokens=900,
                ),
                timeout=self.classifier_timeout_seconds,
            )
            diagnostics.classifier_ok = True
        except asyncio.TimeoutError:
            diagnostics.error = f"classifier timeout after {self.classifier_timeout_seconds:.1f}s"
        except Exception as exc:
            diagnostics.error = str(exc)[:220]
        diagnostics.latency_ms = max(0, int((time.perf_counter() - started) * 1000))

        if not isinstance(payload, dict):
            if diagnostics.error:
                logger.warning("Judge classifier failed: %s", diagnostics.error)
            return empty
        diagnostics.json_valid = True
        memories = payload.get("memories")
        loops = payload.get("loops")
        return {
            "memories": memories if isinstance(memories, list) else [],
            "loops": loops if isinstance(loops, list) else [],
        }

    def sanitize_memories(
        self,
        raw_items: list[Any],
        window_text: str,
        diagnostics: JudgeDiagnostics,
    ) -> list[tuple[str, str, MemoryMetadata]]:
        accepted: list[tuple[str, str, MemoryMetadata]] = []
        rejected: Counter[str] = Counter()
        for item in raw_items:
            if not isinstance(item, dict):
                rejected["not_an_object"] += 1
                continue
            memory_type = str(item.get("type", "")).strip().upper()
            content = collapse_spaces(str(item.get("content", "") or ""))
            confidence = as_float(item.get("confidence"), -1.0)
            decision = self.moderation.evaluate(
                MemoryModerationInput(
                    memory_type=memory_type,
                    content=content,
                    confidence=confidence if confidence >= 0.0 else None,
                    window_text=window_text,
                )
            )
            if not decision.accepted:
                rejected[decision.reason] += 1
                continue
            fields = sanitize_metadata_fields(item)
            fields["source"] = "judge"
            if confidence >= 0.0:
                fields["confidence"] = round(min(1.0, confidence), 3)
            accepted.append((memory_type, content, MemoryMetadata.from_dict(fields)))
        diagnostics.memories_rejected = dict(rejected)
        return accepted

    def sanitize_loops(self, raw_items: list[Any], diagnostics: JudgeDiagnostics) -> list[LoopCandidate]:
        candidates: list[LoopCandidate] = []
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            content = collapse_spaces(str(item.get("content", "") or ""))[:MAX_LOOP_CONTENT_CHARS]
            if len(content) < 3:
                continue
            confidence = as_float(item.get("confidence"), 1.0)
            if confidence < self.min_loop_confidence:
                continue
            raw_kind = normalize_loop_kind(item.get("kind"))
            kind = classify_loop_kind(raw_kind, content)
            downgraded = raw_kind != kind
            if downgraded:
                diagnostics.loops_downgraded += 1
            candidates.append(
                LoopCandidate(
                    kind=kind,
                    content=content,
                    signature=loop_signature(content, item.get("dedupe_key")),
                    downgraded=downgraded,
                )
            )
        return candidates

    async def write_loops(
        self,
        owner_id: str,
        persona_id: str,
        candidates: list[LoopCandidate],
        *,
        skip_commitments: bool,
        now: datetime,
        diagnostics: JudgeDiagnostics,
    ) -> list[LoopRecord]:
        if not candidates:
            return []
        pending = await self.store.list_pending_loops(owner_id, persona_id)
        existing = {(loop.kind, loop.dedupe_key) for loop in pending}
        seen: set[tuple[str, str]] = set()
        written: list[LoopRecord] = []
        for candidate in candidates:
            signature = (candidate.kind, candidate.signature)
            if signature in seen or signature in existing:
                diagnostics.loops_skipped += 1
                continue
            seen.add(signature)
            if skip_commitments and candidate.kind == "COMMITMENT":
                diagnostics.loops_skipped += 1
                continue
            loop = await self.store.insert_loop(
                owner_id=owner_id,
                persona_id=persona_id,
                content=candidate.content,
                kind=candidate.kind,
                dedupe_key=candidate.signature,
                now=now,
            )
            if loop is None:
                # A concurrent run wrote the same pending loop first.
                diagnostics.loops_skipped += 1
                continue
            written.append(loop)
        diagnostics.loops_written = len(written)
        return written

    async def process_turn(
        self,
        owner_id: str,
        persona_id: str,
        user_text: str,
        assistant_text: str = "",
        *,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> JudgeResult | None:
        """Run the extraction pipeline for one turn. Never raises; failures are logged and recorded."""
        now = now or utc_now()
        try:
            return await self._process_turn(
                owner_id,
                persona_id,
                user_text,
                assistant_text,
                session_id=session_id,
                now=now,
            )
        except Exception as exc:
            logger.exception("Extraction judge failed: owner=%s persona=%s", owner_id, persona_id)
            await self._record_failure(owner_id, persona_id, exc, now)
            return None

    async def _record_failure(self, owner_id: str, persona_id: str, exc: Exception, now: datetime) -> None:
        def mutate(state: dict[str, Any]) -> None:
            set_path(state, "diagnostics.judge.lastErrorAt", to_iso(now))
            set_path(state, "diagnostics.judge.lastError", str(exc)[:220])

        try:
            await self.state_service.update(owner_id, persona_id, mutate, now=now)
        except Exception:
            logger.exception("Could not record judge failure in session state")

    async def _process_turn(
        self,
        owner_id: str,
        persona_id: str,
        user_text: str,
        assistant_text: str,
        *,
        session_id: str | None,
        now: datetime,
    ) -> JudgeResult:
        diagnostics = JudgeDiagnostics(backend_name=self.backend_name, model_name=self.model_name)
        window = await self.build_window(owner_id, persona_id, now=now, fallback_text=user_text)
        diagnostics.window_size = len(window)
        payload = await self.classify(window, diagnostics)

        memory_items = self.sanitize_memories(payload["memories"], "\n".join(window), diagnostics)
        diagnostics.memory_candidates = len(payload["memories"])
        stored: list[MemoryRecord] = []
        for memory_type, content, metadata in memory_items:
            result = await self.memory_service.store_memory(owner_id, memory_type, content, metadata, now=now)
            stored.append(result.record)
            if result.created:
                diagnostics.memories_created += 1
            else:
                diagnostics.memories_merged += 1

        loop_candidates = self.sanitize_loops(payload["loops"], diagnostics)
        diagnostics.loop_candidates = len(loop_candidates)
        pending_commitments = await self.store.list_pending_loops(owner_id, persona_id, kind="COMMITMENT")
        completed_target = find_completed_commitment(user_text, pending_commitments)
        loops = await self.write_loops(
            owner_id,
            persona_id,
            loop_candidates,
            skip_commitments=completed_target is not None,
            now=now,
            diagnostics=diagnostics,
        )

        completed: LoopRecord | None = None
        if completed_target is not None:
            if await self.store.complete_loop(completed_target.loop_id, completed_at=now):
                completed = completed_target
                diagnostics.completed_loop_id = completed_target.loop_id
                logger.info("Commitment completed: owner=%s loop=%s", owner_id, completed_target.loop_id)

        spine_increment = 2 if collapse_spaces(assistant_text) else 1

        def mutate(state: dict[str, Any]) -> None:
            state["lastInteraction"] = to_iso(now)
            state["messageCount"] = as_int(state.get("messageCount"), 0) + 1
            state["lastUserMessage"] = collapse_spaces(user_text)[:LAST_MESSAGE_PREVIEW_CHARS]
            set_path(state, "diagnostics.judge", diagnostics.to_state(now))
            since = as_int(get_path(state, "summarySpine.messagesSinceVersion"), 0)
            set_path(state, "summarySpine.messagesSinceVersion", since + spine_increment)

        state = await self.state_service.update(owner_id, persona_id, mutate, now=now)

        message_count = as_int(state.get("messageCount"), 0)
        every = self.rolling_summary_every_n_turns
        if self.rolling_summarizer is not None and every > 0 and message_count % every == 0:
            diagnostics.rolling_summary = await self.refresh_rolling_summary(
                owner_id,
                persona_id,
                session_id=session_id,
                now=now,
            )

        if self.spine_writer is not None:
            diagnostics.spine_version = await self.maybe_update_spine(
                owner_id,
                persona_id,
                user_text,
                assistant_text,
                messages_since_version=as_int(get_path(state, "summarySpine.messagesSinceVersion"), 0),
                now=now,
            )

        return JudgeResult(memories=stored, loops=loops, completed=completed, diagnostics=diagnostics)

    async def refresh_rolling_summary(
        self,
        owner_id: str,
        persona_id: str,
        *,
        session_id: str | None,
        now: datetime,
    ) -> str:
        """Refresh the rolling summary under a hard timeout; returns ``ok``, ``timeout``, ``error`` or ``disabled``."""
        if self.rolling_summarizer is None:
            return "disabled"
        current = await self.state_service.get(owner_id, persona_id)
        scoped_session = current.state.get("rollingSummarySessionId")
        previous = current.rolling_summary if session_id and scoped_session == session_id else ""
        since: datetime | None = None
        if session_id:
            session = await self.store.get_session(session_id)
            since = session.started_at if session else None

        summary: str | None = None
        error = ""
        status = "ok"
        try:
            summary = await asyncio.wait_for(
                self.rolling_summarizer.summarize(owner_id, persona_id, previous_summary=previous, since=since),
                timeout=self.rolling_summary_timeout_seconds,
            )
        except asyncio.TimeoutError:
            status = "timeout"
            error = f"timeout after {self.rolling_summary_timeout_seconds:.1f}s"
        except Exception as exc:
            status = "error"
            error = str(exc)[:220]
        if status != "ok":
            logger.warning("Rolling summary refresh failed: owner=%s reason=%s", owner_id, error)

        stamp = to_iso(now)

        def mutate(state: dict[str, Any]) -> None:
            set_path(state, "diagnostics.rollingSummary.lastAttemptAt", stamp)
            if status == "ok":
                set_path(state, "diagnostics.rollingSummary.lastSuccessAt", stamp)
                if session_id:
                    state["rollingSummarySessionId"] = session_id
            else:
                set_path(state, "diagnostics.rollingSummary.lastErrorAt", stamp)
                set_path(state, "diagnostics.rollingSummary.lastError", error)

        await self.state_service.update(
            owner_id,
            persona_id,
            mutate,
            rolling_summary=summary if status == "ok" and summary else None,
            now=now,
        )
        return status

    async def maybe_update_spine(
        self,
        owner_id: str,
        persona_id: str,
        user_text: str,
        assistant_text: str,
        *,
        messages_since_version: int,
        now: datetime,
    ) -> int | None:
        if self.spine_writer is None:
            return None
        latest = await self.store.get_latest_summary_spine(owner_id)
        if not self.spine_writer.is_due(latest, messages_since_version):
            return None
        message_count = (latest.message_count if latest else 0) + messages_since_version
        try:
            record = await asyncio.wait_for(
                self.spine_writer.write_version(
                    owner_id,
                    user_text,
                    assistant_text,
                    latest=latest,
                    message_count=message_count,
                    now=now,
                ),
                timeout=self.spine_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Summary spine update timed out: owner=%s", owner_id)
            return None
        except Exception as exc:
            logger.warning("Summary spine update failed: owner=%s error=%s", owner_id, exc)
            return None
        if record is None:
            return None

        def mutate(state: dict[str, Any]) -> None:
            set_path(state, "summarySpine.messagesSinceVersion", 0)
            set_path(state, "summarySpine.lastVersion", record.version)
            set_path(state, "summarySpine.lastUpdatedAt", to_iso(now))

        await self.state_service.update(owner_id, persona_id, mutate, now=now)
        return record.version
