from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Sequence

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..common import utc_now
from .models import (
    LOOP_COMPLETED,
    LOOP_PENDING,
    MEMORY_TYPES,
    LoopRecord,
    MemoryMetadata,
    MemoryRecord,
    MessageRecord,
    SessionRecord,
    SessionStateRecord,
    SessionSummaryRecord,
    SummarySpineRecord,
)
from .storage.utils import dump_json, load_json_dict, merge_memory_metadata, new_id


logger = logging.getLogger("companion_memory")

_NOT_ARCHIVED_SQL = "COALESCE(metadata->>'status', 'ACTIVE') <> 'ARCHIVED'"
_MEMORY_COLUMNS = (
    "memory_id, owner_id, persona_scope, memory_type, content, memory_key, metadata, "
    "created_at, updated_at, embedding IS NOT NULL AS has_embedding"
)


def _vector_literal(values: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(value)) for value in values) + "]"


def _memory_from_record(row: Any) -> MemoryRecord:
    similarity = row["similarity"] if "similarity" in row.keys() else None
    return MemoryRecord(
        memory_id=str(row["memory_id"]),
        owner_id=str(row["owner_id"]),
        persona_scope=row["persona_scope"],
        memory_type=str(row["memory_type"]),
        content=str(row["content"]),
        memory_key=row["memory_key"],
        metadata=MemoryMetadata.from_dict(load_json_dict(row["metadata"])),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        has_embedding=bool(row["has_embedding"]),
        similarity=float(similarity) if similarity is not None else None,
    )


def _loop_from_record(row: Any) -> LoopRecord:
    return LoopRecord(
        loop_id=str(row["loop_id"]),
        owner_id=str(row["owner_id"]),
        persona_id=str(row["persona_id"]),
        content=str(row["content"]),
        kind=str(row["kind"]),
        status=str(row["status"]),
        dedupe_key=str(row["dedupe_key"] or ""),
        created_at=row["created_at"],
        completed_at=row["completed_at"],
        resolution=row["resolution"],
    )


def _session_from_record(row: Any) -> SessionRecord:
    return SessionRecord(
        session_id=str(row["session_id"]),
        owner_id=str(row["owner_id"]),
        persona_id=str(row["persona_id"]),
        started_at=row["started_at"],
        last_activity_at=row["last_activity_at"],
        ended_at=row["ended_at"],
        turn_count=int(row["turn_count"] or 0),
    )


def _summary_from_record(row: Any) -> SessionSummaryRecord:
    return SessionSummaryRecord(
        session_id=str(row["session_id"]),
        owner_id=str(row["owner_id"]),
        persona_id=str(row["persona_id"]),
        summary=load_json_dict(row["summary"]),
        metadata=load_json_dict(row["metadata"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _message_from_record(row: Any) -> MessageRecord:
    return MessageRecord(
        message_id=int(row["message_id"]),
        owner_id=str(row["owner_id"]),
        persona_id=str(row["persona_id"]),
        role=str(row["role"]),
        content=str(row["content"]),
        created_at=row["created_at"],
    )


def _spine_from_record(row: Any) -> SummarySpineRecord:
    return SummarySpineRecord(
        owner_id=str(row["owner_id"]),
        conversation_id=str(row["conversation_id"]),
        version=int(row["version"]),
        content=str(row["content"]),
        message_count=int(row["message_count"] or 0),
        created_at=row["created_at"],
    )


class PostgresMemoryStore:
    """Postgres + pgvector store implementing the same API as MemoryStore."""

    SCHEMA_VERSION = 2
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres memory backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres memory schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade the service before starting."
                        )
                    await self._create_schema(conn)
                    await self._migrate_schema(conn, version)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True
            logger.info("Postgres memory store ready (schema v%s)", self.SCHEMA_VERSION)

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM memory_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO memory_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _migrate_schema(self, conn: "asyncpg.Connection", from_version: int) -> None:
        # v2: pending-loop uniqueness guard (collapses pre-existing duplicates first).
        if from_version < 2:
            await conn.execute("ALTER TABLE loops ADD COLUMN IF NOT EXISTS resolution TEXT")
            await conn.execute(
                """
                UPDATE loops AS older
                SET status = 'COMPLETED', resolution = 'deduped', completed_at = older.updated_at
                WHERE older.status = 'PENDING'
                  AND EXISTS (
                    SELECT 1 FROM loops AS newer
                    WHERE newer.owner_id = older.owner_id
                      AND newer.persona_id = older.persona_id
                      AND newer.kind = older.kind
                      AND newer.dedupe_key = older.dedupe_key
                      AND newer.status = 'PENDING'
                      AND (newer.created_at, newer.loop_id) > (older.created_at, older.loop_id)
                  )
                """
            )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_loops_pending_signature
            ON loops(owner_id, persona_id, kind, dedupe_key)
            WHERE status = 'PENDING'
            """
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memories (
                memory_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                persona_scope TEXT,
                memory_type TEXT NOT NULL,
                content TEXT NOT NULL,
                memory_key TEXT,
                embedding vector,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_owner_key
            ON memories(owner_id, memory_key);

            CREATE INDEX IF NOT EXISTS idx_memories_owner_scope_type
            ON memories(owner_id, persona_scope, memory_type, created_at);

            CREATE TABLE IF NOT EXISTS loops (
                loop_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                content TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                dedupe_key TEXT NOT NULL DEFAULT '',
                resolution TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                completed_at TIMESTAMPTZ
            );

            CREATE INDEX IF NOT EXISTS idx_loops_owner_status
            ON loops(owner_id, persona_id, status, created_at DESC);

            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                last_activity_at TIMESTAMPTZ NOT NULL,
                ended_at TIMESTAMPTZ,
                turn_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_open
            ON sessions(owner_id, persona_id, ended_at, last_activity_at DESC);

            CREATE TABLE IF NOT EXISTS session_summaries (
                session_id TEXT PRIMARY KEY REFERENCES sessions(session_id) ON DELETE CASCADE,
                owner_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                summary JSONB NOT NULL DEFAULT '{}'::jsonb,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_session_summaries_owner
            ON session_summaries(owner_id, persona_id, updated_at DESC);

            CREATE TABLE IF NOT EXISTS session_state (
                owner_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                rolling_summary TEXT NOT NULL DEFAULT '',
                state JSONB NOT NULL DEFAULT '{}'::jsonb,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (owner_id, persona_id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                message_id BIGSERIAL PRIMARY KEY,
                owner_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_messages_owner_time
            ON messages(owner_id, persona_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS summary_spine (
                owner_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                content TEXT NOT NULL,
                message_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (owner_id, conversation_id, version)
            );
            """
        )

    # Memories

    async def upsert_memory(
        self,
        *,
        owner_id: str,
        persona_scope: str | None,
        memory_type: str,
        content: str,
        memory_key: str | None,
        metadata: MemoryMetadata,
        now: datetime | None = None,
    ) -> tuple[MemoryRecord, bool]:
        stamp = now or utc_now()
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for _ in range(2):
                    if memory_key:
                        existing = await conn.fetchrow(
                            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE owner_id = $1 AND memory_key = $2 FOR UPDATE",
                            owner_id,
                            memory_key,
                        )
                        if existing is not None:
                            prior = _memory_from_record(existing)
                            merged = merge_memory_metadata(prior.metadata, metadata)
                            row = await conn.fetchrow(
                                f"""
                                UPDATE memories SET metadata = $2::jsonb, updated_at = $3
                                WHERE memory_id = $1
                                RETURNING {_MEMORY_COLUMNS}
                                """,
                                prior.memory_id,
                                dump_json(merged.to_dict()),
                                stamp,
                            )
                            return _memory_from_record(row), False

                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO memories (
                            memory_id, owner_id, persona_scope, memory_type, content,
                            memory_key, metadata, created_at, updated_at
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $8)
                        ON CONFLICT (owner_id, memory_key) DO NOTHING
                        RETURNING {_MEMORY_COLUMNS}
                        """,
                        new_id(),
                        owner_id,
                        persona_scope,
                        memory_type,
                        content,
                        memory_key,
                        dump_json(metadata.to_dict()),
                        stamp,
                    )
                    if row is not None:
                        return _memory_from_record(row), True
                    # Lost an insert race for this key; the second pass merges into the winner.
        raise RuntimeError(f"memory upsert for key {memory_key!r} did not converge")

    async def get_memory(self, memory_id: str) -> MemoryRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE memory_id = $1", memory_id)
        return _memory_from_record(row) if row else None

    async def get_memory_by_key(self, owner_id: str, memory_key: str) -> MemoryRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE owner_id = $1 AND memory_key = $2",
                owner_id,
                memory_key,
            )
        return _memory_from_record(row) if row else None

    async def set_memory_embedding(self, memory_id: str, embedding: Sequence[float]) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE memories SET embedding = $2::text::vector WHERE memory_id = $1",
                memory_id,
                _vector_literal(embedding),
            )

    async def update_memory_metadata(
        self,
        memory_id: str,
        metadata: MemoryMetadata,
        *,
        now: datetime | None = None,
    ) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE memories SET metadata = $2::jsonb, updated_at = $3 WHERE memory_id = $1",
                memory_id,
                dump_json(metadata.to_dict()),
                now or utc_now(),
            )

    @staticmethod
    def _memory_filters(
        owner_id: str,
        persona_id: str | None,
        types: Sequence[str],
    ) -> tuple[str, list[Any]]:
        allowed = [value for value in types if value in MEMORY_TYPES] or list(MEMORY_TYPES)
        args: list[Any] = [owner_id, allowed]
        sql = "owner_id = $1 AND memory_type = ANY($2::text[])"
        if persona_id is not None:
            args.append(persona_id)
            sql += f" AND (persona_scope = ${len(args)} OR persona_scope IS NULL)"
        return sql, args

    async def list_memories(
        self,
        owner_id: str,
        *,
        persona_id: str | None = None,
        types: Sequence[str] = MEMORY_TYPES,
        include_archived: bool = False,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[MemoryRecord]:
        where, args = self._memory_filters(owner_id, persona_id, types)
        if not include_archived:
            where += f" AND {_NOT_ARCHIVED_SQL}"
        order = "created_at DESC, memory_id DESC" if newest_first else "created_at ASC, memory_id ASC"
        sql = f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE {where} ORDER BY {order}"
        if limit is not None:
            args.append(max(1, int(limit)))
            sql += f" LIMIT ${len(args)}"
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_memory_from_record(row) for row in rows]

    async def vector_candidates(
        self,
        owner_id: str,
        persona_id: str | None,
        query_embedding: Sequence[float],
        *,
        limit: int = 50,
        types: Sequence[str] = MEMORY_TYPES,
    ) -> list[MemoryRecord]:
        where, args = self._memory_filters(owner_id, persona_id, types)
        args.append(_vector_literal(query_embedding))
        vector_arg = f"${len(args)}::text::vector"
        args.append(max(1, int(limit)))
        sql = f"""
            SELECT {_MEMORY_COLUMNS}, 1 - (embedding <=> {vector_arg}) AS similarity
            FROM memories
            WHERE {where} AND embedding IS NOT NULL
            ORDER BY embedding <=> {vector_arg}
            LIMIT ${len(args)}
        """
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_memory_from_record(row) for row in rows]

    async def count_memories_created_since(
        self,
        owner_id: str,
        since: datetime | None,
        *,
        include_archived: bool = False,
    ) -> int:
        sql = "SELECT COUNT(*) FROM memories WHERE owner_id = $1"
        args: list[Any] = [owner_id]
        if since is not None:
            args.append(since)
            sql += " AND created_at > $2"
        if not include_archived:
            sql += f" AND {_NOT_ARCHIVED_SQL}"
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(sql, *args)
        return int(value or 0)

    async def list_memories_missing_embedding(self, *, limit: int = 50) -> list[MemoryRecord]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_MEMORY_COLUMNS}
                FROM memories
                WHERE embedding IS NULL AND {_NOT_ARCHIVED_SQL}
                ORDER BY created_at DESC
                LIMIT $1
                """,
                max(1, int(limit)),
            )
        return [_memory_from_record(row) for row in rows]

    async def list_recent_memory_owners(self, *, limit: int = 25) -> list[str]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT owner_id, MAX(created_at) AS latest
                FROM memories
                GROUP BY owner_id
                ORDER BY latest DESC
                LIMIT $1
                """,
                max(1, int(limit)),
            )
        return [str(row["owner_id"]) for row in rows]

    # Loops

    async def insert_loop(
        self,
        *,
        owner_id: str,
        persona_id: str,
        content: str,
        kind: str,
        dedupe_key: str,
        now: datetime | None = None,
    ) -> LoopRecord | None:
        stamp = now or utc_now()
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO loops (
                    loop_id, owner_id, persona_id, content, kind, status,
                    dedupe_key, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, 'PENDING', $6, $7, $7)
                ON CONFLICT DO NOTHING
                RETURNING *
                """,
                new_id(),
                owner_id,
                persona_id,
                content,
                kind,
                dedupe_key,
                stamp,
            )
        return _loop_from_record(row) if row else None

    async def list_loops(
        self,
        owner_id: str,
        persona_id: str,
        *,
        status: str | None = None,
        kinds: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[LoopRecord]:
        sql = "SELECT * FROM loops WHERE owner_id = $1 AND persona_id = $2"
        args: list[Any] = [owner_id, persona_id]
        if status:
            args.append(status)
            sql += f" AND status = ${len(args)}"
        if kinds:
            args.append(list(kinds))
            sql += f" AND kind = ANY(${len(args)}::text[])"
        sql += " ORDER BY created_at DESC, loop_id DESC"
        if limit is not None:
            args.append(max(1, int(limit)))
            sql += f" LIMIT ${len(args)}"
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_loop_from_record(row) for row in rows]

    async def list_pending_loops(self, owner_id: str, persona_id: str, *, kind: str | None = None) -> list[LoopRecord]:
        return await self.list_loops(owner_id, persona_id, status=LOOP_PENDING, kinds=[kind] if kind else None)

    async def complete_loop(
        self,
        loop_id: str,
        *,
        completed_at: datetime | None = None,
        resolution: str = "done",
    ) -> bool:
        stamp = completed_at or utc_now()
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE loops
                SET status = $2, completed_at = $3, updated_at = $3, resolution = $4
                WHERE loop_id = $1 AND status = 'PENDING'
                """,
                loop_id,
                LOOP_COMPLETED,
                stamp,
                resolution,
            )
        return str(result).endswith(" 1")

    async def list_completed_loops_since(
        self,
        owner_id: str,
        persona_id: str,
        *,
        kind: str,
        since: datetime,
        limit: int = 20,
    ) -> list[LoopRecord]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM loops
                WHERE owner_id = $1 AND persona_id = $2 AND kind = $3
                  AND status = 'COMPLETED' AND completed_at >= $4
                  AND COALESCE(resolution, 'done') = 'done'
                ORDER BY completed_at DESC
                LIMIT $5
                """,
                owner_id,
                persona_id,
                kind,
                since,
                max(1, int(limit)),
            )
        return [_loop_from_record(row) for row in rows]

    async def list_loop_scopes(self, owner_id: str) -> list[str]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT DISTINCT persona_id FROM loops WHERE owner_id = $1 AND status = 'PENDING'",
                owner_id,
            )
        return [str(row["persona_id"]) for row in rows]

    # Sessions

    async def get_open_session(self, owner_id: str, persona_id: str) -> SessionRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM sessions
                WHERE owner_id = $1 AND persona_id = $2 AND ended_at IS NULL
                ORDER BY last_activity_at DESC
                LIMIT 1
                """,
                owner_id,
                persona_id,
            )
        return _session_from_record(row) if row else None

    async def get_session(self, session_id: str) -> SessionRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM sessions WHERE session_id = $1", session_id)
        return _session_from_record(row) if row else None

    async def create_session(self, owner_id: str, persona_id: str, *, now: datetime | None = None) -> SessionRecord:
        stamp = now or utc_now()
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO sessions (session_id, owner_id, persona_id, started_at, last_activity_at, ended_at, turn_count)
                VALUES ($1, $2, $3, $4, $4, NULL, 1)
                RETURNING *
                """,
                new_id(),
                owner_id,
                persona_id,
                stamp,
            )
        return _session_from_record(row)

    async def touch_session(self, session_id: str, *, now: datetime | None = None) -> SessionRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE sessions
                SET last_activity_at = $2, turn_count = turn_count + 1
                WHERE session_id = $1 AND ended_at IS NULL
                RETURNING *
                """,
                session_id,
                now or utc_now(),
            )
        if row is None:
            return await self.get_session(session_id)
        return _session_from_record(row)

    async def end_session(self, session_id: str, *, ended_at: datetime) -> SessionRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE sessions SET ended_at = $2 WHERE session_id = $1 AND ended_at IS NULL RETURNING *",
                session_id,
                ended_at,
            )
        return _session_from_record(row) if row else None

    async def upsert_session_summary(
        self,
        *,
        session_id: str,
        owner_id: str,
        persona_id: str,
        summary: dict[str, Any],
        metadata: dict[str, Any],
        now: datetime | None = None,
    ) -> SessionSummaryRecord:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO session_summaries (session_id, owner_id, persona_id, summary, metadata, created_at, updated_at)
                VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $6)
                ON CONFLICT (session_id) DO UPDATE SET
                    summary = EXCLUDED.summary,
                    metadata = EXCLUDED.metadata,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                session_id,
                owner_id,
                persona_id,
                dump_json(summary),
                dump_json(metadata),
                now or utc_now(),
            )
        return _summary_from_record(row)

    async def get_session_summary(self, session_id: str) -> SessionSummaryRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM session_summaries WHERE session_id = $1", session_id)
        return _summary_from_record(row) if row else None

    async def get_latest_session_summary(self, owner_id: str, persona_id: str) -> SessionSummaryRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM session_summaries
                WHERE owner_id = $1 AND persona_id = $2
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                owner_id,
                persona_id,
            )
        return _summary_from_record(row) if row else None

    async def get_session_state(self, owner_id: str, persona_id: str) -> SessionStateRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM session_state WHERE owner_id = $1 AND persona_id = $2",
                owner_id,
                persona_id,
            )
        if row is None:
            return None
        return SessionStateRecord(
            owner_id=str(row["owner_id"]),
            persona_id=str(row["persona_id"]),
            rolling_summary=str(row["rolling_summary"] or ""),
            state=load_json_dict(row["state"]),
            updated_at=row["updated_at"],
        )

    async def upsert_session_state(
        self,
        owner_id: str,
        persona_id: str,
        *,
        state: dict[str, Any],
        rolling_summary: str | None = None,
        now: datetime | None = None,
    ) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO session_state (owner_id, persona_id, rolling_summary, state, updated_at)
                VALUES ($1, $2, COALESCE($3, ''), $4::jsonb, $5)
                ON CONFLICT (owner_id, persona_id) DO UPDATE SET
                    rolling_summary = COALESCE($3, session_state.rolling_summary),
                    state = EXCLUDED.state,
                    updated_at = EXCLUDED.updated_at
                """,
                owner_id,
                persona_id,
                rolling_summary,
                dump_json(state),
                now or utc_now(),
            )

    # Messages

    async def save_message(
        self,
        owner_id: str,
        persona_id: str,
        role: str,
        content: str,
        *,
        created_at: datetime | None = None,
    ) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                """
                INSERT INTO messages (owner_id, persona_id, role, content, created_at)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING message_id
                """,
                owner_id,
                persona_id,
                role,
                content,
                created_at or utc_now(),
            )
        return int(value)

    async def get_recent_messages(
        self,
        owner_id: str,
        persona_id: str,
        *,
        role: str | None = None,
        since: datetime | None = None,
        limit: int = 20,
    ) -> list[MessageRecord]:
        sql = "SELECT * FROM messages WHERE owner_id = $1 AND persona_id = $2"
        args: list[Any] = [owner_id, persona_id]
        if role:
            args.append(role)
            sql += f" AND role = ${len(args)}"
        if since is not None:
            args.append(since)
            sql += f" AND created_at >= ${len(args)}"
        args.append(max(1, int(limit)))
        sql += f" ORDER BY created_at DESC, message_id DESC LIMIT ${len(args)}"
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_message_from_record(row) for row in rows]

    async def get_messages_between(
        self,
        owner_id: str,
        persona_id: str,
        *,
        start: datetime,
        end: datetime | None = None,
        role: str | None = None,
        limit: int | None = None,
    ) -> list[MessageRecord]:
        sql = "SELECT * FROM messages WHERE owner_id = $1 AND persona_id = $2 AND created_at >= $3"
        args: list[Any] = [owner_id, persona_id, start]
        if end is not None:
            args.append(end)
            sql += f" AND created_at <= ${len(args)}"
        if role:
            args.append(role)
            sql += f" AND role = ${len(args)}"
        sql += " ORDER BY created_at DESC, message_id DESC"
        if limit is not None:
            args.append(max(1, int(limit)))
            sql += f" LIMIT ${len(args)}"
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_message_from_record(row) for row in reversed(rows)]

    async def get_last_message_at(
        self,
        owner_id: str,
        persona_id: str,
        *,
        role: str | None = "user",
        since: datetime | None = None,
    ) -> datetime | None:
        sql = "SELECT MAX(created_at) FROM messages WHERE owner_id = $1 AND persona_id = $2"
        args: list[Any] = [owner_id, persona_id]
        if role:
            args.append(role)
            sql += f" AND role = ${len(args)}"
        if since is not None:
            args.append(since)
            sql += f" AND created_at >= ${len(args)}"
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(sql, *args)

    async def count_messages(self, owner_id: str, persona_id: str, *, since: datetime | None = None) -> int:
        sql = "SELECT COUNT(*) FROM messages WHERE owner_id = $1 AND persona_id = $2"
        args: list[Any] = [owner_id, persona_id]
        if since is not None:
            args.append(since)
            sql += " AND created_at >= $3"
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(sql, *args)
        return int(value or 0)

    # Summary spine

    async def get_latest_summary_spine(
        self,
        owner_id: str,
        conversation_id: str = "default",
    ) -> SummarySpineRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM summary_spine
                WHERE owner_id = $1 AND conversation_id = $2
                ORDER BY version DESC
                LIMIT 1
                """,
                owner_id,
                conversation_id,
            )
        return _spine_from_record(row) if row else None

    async def create_summary_spine_version(
        self,
        owner_id: str,
        content: str,
        *,
        message_count: int,
        conversation_id: str = "default",
        now: datetime | None = None,
    ) -> SummarySpineRecord:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Serialize version allocation per conversation.
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"{owner_id}:{conversation_id}",
                )
                row = await conn.fetchrow(
                    """
                    INSERT INTO summary_spine (owner_id, conversation_id, version, content, message_count, created_at)
                    SELECT $1, $2, COALESCE(MAX(version), 0) + 1, $3, $4, $5
                    FROM summary_spine
                    WHERE owner_id = $1 AND conversation_id = $2
                    RETURNING *
                    """,
                    owner_id,
                    conversation_id,
                    content,
                    max(0, int(message_count)),
                    now or utc_now(),
                )
        return _spine_from_record(row)

    async def list_summary_spine_versions(
        self,
        owner_id: str,
        conversation_id: str = "default",
        *,
        limit: int = 10,
    ) -> list[SummarySpineRecord]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM summary_spine
                WHERE owner_id = $1 AND conversation_id = $2
                ORDER BY version DESC
                LIMIT $3
                """,
                owner_id,
                conversation_id,
                max(1, int(limit)),
            )
        return [_spine_from_record(row) for row in rows]
