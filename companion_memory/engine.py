from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .common import to_iso, utc_now
from .config import Settings
from .context.assembler import ContextAssembler
from .context.payload import ContextPayload
from .memory.curator import MemoryCurator
from .memory.factory import build_memory_store
from .memory.judge import ExtractionJudge
from .memory.models import SessionRecord
from .memory.moderation import MemoryModerationPolicy
from .memory.service import MemoryService
from .memory.state import SessionStateService, set_path
from .memory.summaries import RollingSummarizer, SummarySpineWriter
from .services.continuity_client import ContinuityClient
from .services.embeddings import EmbeddingClient
from .services.llm_client import ChatCompletionClient
from .session.lifecycle import SessionLifecycleManager
from .session.summarizer import SessionSummarizer
from .tasks import BackgroundTaskSupervisor

logger = logging.getLogger("companion_memory")


@dataclass(slots=True)
class TurnContext:
    session: SessionRecord
    is_session_start: bool
    context: ContextPayload
    user_message_id: int


class CompanionMemoryEngine:
    """Wires storage, the judge, the curator, sessions and context assembly into a per-turn API.

    ``begin_turn`` runs before the reply is generated and returns the context for it.
    ``complete_turn`` stores the reply and hands extraction and curation to the supervisor.
    """

    def __init__(
        self,
        settings: Settings,
        store: Any,
        *,
        llm: Any,
        summary_llm: Any = None,
        embedder: Any = None,
        continuity: Any = None,
        supervisor: BackgroundTaskSupervisor | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.llm = llm
        self.summary_llm = summary_llm or llm
        self.embedder = embedder
        self.continuity = continuity
        self.supervisor = supervisor or BackgroundTaskSupervisor(
            max_concurrency=settings.background_max_concurrency,
            default_timeout=settings.background_task_timeout_seconds,
        )

        self.state = SessionStateService(store)
        self.memory = MemoryService(
            store,
            embedder,
            supervisor=self.supervisor,
            blended_scoring=settings.feature_entity_pipeline,
            embedding_timeout_seconds=settings.embedding_timeout_seconds,
        )
        spine_writer = None
        if settings.feature_summary_spine:
            spine_writer = SummarySpineWriter(store, self.summary_llm, model=settings.llm_summary_model)
        self.judge = ExtractionJudge(
            store,
            self.memory,
            self.state,
            llm,
            moderation=MemoryModerationPolicy.from_settings(settings),
            rolling_summarizer=RollingSummarizer(store, self.summary_llm, model=settings.llm_summary_model),
            spine_writer=spine_writer,
            persona_name=settings.persona_name,
            min_loop_confidence=settings.judge_min_confidence,
            classifier_timeout_seconds=settings.judge_timeout_seconds,
            rolling_summary_timeout_seconds=settings.rolling_summary_timeout_seconds,
            spine_timeout_seconds=settings.summary_spine_timeout_seconds,
            rolling_summary_every_n_turns=settings.rolling_summary_every_n_turns,
        )
        self.curator = MemoryCurator(
            store,
            self.memory,
            self.state,
            enabled=settings.feature_memory_curator,
            cooldown_seconds=settings.curator_cooldown_seconds,
            min_interval_hours=settings.curator_min_interval_hours,
            memory_threshold=settings.curator_memory_threshold,
        )
        self.session_summarizer = SessionSummarizer(
            store,
            self.summary_llm,
            model=settings.llm_summary_model,
            timeout_seconds=settings.session_summary_timeout_seconds,
        )
        self.sessions = SessionLifecycleManager(
            store,
            self.state,
            summarizer=self.session_summarizer,
            continuity=continuity,
            supervisor=self.supervisor,
            active_window_seconds=settings.session_active_window_seconds,
            summary_enabled=settings.feature_session_summary,
            ingest_enabled=settings.feature_continuity_ingest,
        )
        self.context = ContextAssembler(
            store,
            self.memory,
            self.state,
            continuity=continuity,
            remote_enabled=settings.feature_continuity_brief,
            remote_timeout_seconds=settings.continuity_timeout_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompanionMemoryEngine":
        llm = ChatCompletionClient(
            base_url=settings.llm_base_url,
            model=settings.llm_judge_model,
            api_key=settings.llm_api_key,
            timeout_seconds=settings.judge_timeout_seconds,
        )
        summary_llm = llm
        if settings.llm_summary_model and settings.llm_summary_model != settings.llm_judge_model:
            summary_llm = ChatCompletionClient(
                base_url=settings.llm_base_url,
                model=settings.llm_summary_model,
                api_key=settings.llm_api_key,
                timeout_seconds=settings.session_summary_timeout_seconds,
            )
        embedder = None
        if settings.embedding_model:
            embedder = EmbeddingClient(
                base_url=settings.embedding_base_url,
                model=settings.embedding_model,
                api_key=settings.embedding_api_key,
                timeout_seconds=settings.embedding_timeout_seconds,
            )
        continuity = None
        if settings.continuity_base_url:
            continuity = ContinuityClient(
                base_url=settings.continuity_base_url,
                tenant_id=settings.continuity_tenant_id,
                timeout_seconds=settings.continuity_timeout_seconds,
            )
        return cls(
            settings,
            build_memory_store(settings),
            llm=llm,
            summary_llm=summary_llm,
            embedder=embedder,
            continuity=continuity,
        )

    def _clients(self) -> list[Any]:
        clients: list[Any] = []
        for client in (self.llm, self.summary_llm, self.embedder, self.continuity):
            if client is not None and all(client is not seen for seen in clients):
                clients.append(client)
        return clients

    async def start(self) -> None:
        await self.store.init()
        for client in self._clients():
            start = getattr(client, "start", None)
            if start is not None:
                await start()
        if self.continuity is not None:
            trace = await self.continuity.health()
            if not trace.ok:
                logger.warning(
                    "Continuity service unhealthy at startup: status=%s error=%s", trace.status, trace.error
                )
        logger.info(
            "Memory engine ready: backend=%s judge=%s continuity=%s",
            getattr(self.store, "backend_name", "unknown"),
            self.judge.model_name or self.judge.backend_name,
            "on" if self.continuity is not None else "off",
        )

    async def close(self) -> None:
        await self.supervisor.close()
        for client in self._clients():
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:
                logger.exception("Client close failed: %s", type(client).__name__)
        with contextlib.suppress(Exception):
            await self.store.close()

    async def begin_turn(
        self,
        owner_id: str,
        persona_id: str,
        user_text: str,
        *,
        transcript: str | None = None,
        now: datetime | None = None,
    ) -> TurnContext:
        now = now or utc_now()
        session = await self.sessions.ensure_active_session(owner_id, persona_id, now=now)
        # Session start is decided before this turn's message lands in the transcript.
        is_session_start = await self.context.detect_session_start(owner_id, persona_id, session)
        payload = await self.context.build_context(
            owner_id,
            persona_id,
            transcript if transcript is not None else user_text,
            session_id=session.session_id,
            is_session_start=is_session_start,
            now=now,
        )
        message_id = await self.store.save_message(owner_id, persona_id, "user", user_text, created_at=now)
        return TurnContext(
            session=session,
            is_session_start=is_session_start,
            context=payload,
            user_message_id=message_id,
        )

    async def complete_turn(
        self,
        owner_id: str,
        persona_id: str,
        user_text: str,
        assistant_text: str,
        *,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> None:
        now = now or utc_now()
        if assistant_text.strip():
            await self.store.save_message(owner_id, persona_id, "assistant", assistant_text, created_at=now)
        self.supervisor.submit(
            "turn_background",
            lambda: self._turn_background(owner_id, persona_id, user_text, assistant_text, session_id, now),
        )

    async def _turn_background(
        self,
        owner_id: str,
        persona_id: str,
        user_text: str,
        assistant_text: str,
        session_id: str | None,
        now: datetime,
    ) -> None:
        await self.judge.process_turn(
            owner_id,
            persona_id,
            user_text,
            assistant_text,
            session_id=session_id,
            now=now,
        )
        curator_error = ""
        try:
            await self.curator.auto_curate_maybe(owner_id, persona_id, now=now)
        except Exception as exc:
            logger.exception("Auto curation failed: owner=%s persona=%s", owner_id, persona_id)
            curator_error = str(exc)[:220] or type(exc).__name__

        background = self.supervisor.diagnostics()

        def mutate(state: dict[str, Any]) -> None:
            set_path(state, "diagnostics.background", background)
            if curator_error:
                set_path(state, "diagnostics.curator.lastErrorAt", to_iso(now))
                set_path(state, "diagnostics.curator.lastError", curator_error)

        await self.state.update(owner_id, persona_id, mutate, now=now)
