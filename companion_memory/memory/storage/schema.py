from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_memory_connection


class MemorySchemaMixin:
    SCHEMA_VERSION = 2

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int | None = None,
        reset_on_schema_mismatch: bool | None = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_ms = busy_timeout_ms
        self.reset_on_schema_mismatch = reset_on_schema_mismatch

    def _connect(self):
        return _sqlite_memory_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms)

    def _allow_destructive_reset_on_mismatch(self) -> bool:
        if self.reset_on_schema_mismatch is not None:
            return self.reset_on_schema_mismatch
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            if not has_tables:
                await self._create_schema(db)
                await self._migrate_v2_pending_loop_guard(db)
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            elif version != self.SCHEMA_VERSION and self._allow_destructive_reset_on_mismatch():
                await self._reset_schema(db)
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            else:
                await self._create_schema(db)
                await self._migrate_schema(db, version)
                if version != self.SCHEMA_VERSION:
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")

            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "summary_spine",
            "messages",
            "session_state",
            "session_summaries",
            "sessions",
            "loops",
            "memories",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)
        await self._migrate_v2_pending_loop_guard(db)

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> set[str]:
        cols: set[str] = set()
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        for row in rows:
            cols.add(str(row[1]))
        return cols

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> None:
        column_name = str(column_sql.split()[0]).strip()
        if not column_name:
            return
        cols = await self._table_columns(db, table_name)
        if column_name in cols:
            return
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    async def _migrate_schema(self, db: aiosqlite.Connection, from_version: int) -> None:
        if from_version < 2:
            await self._migrate_v2_pending_loop_guard(db)
        # Re-run idempotent migration to self-heal partial deployments.
        await self._migrate_v2_pending_loop_guard(db)

    async def _migrate_v2_pending_loop_guard(self, db: aiosqlite.Connection) -> None:
        await self._add_column_if_missing(db, "loops", "resolution TEXT")
        # Collapse pending duplicates left by the pre-constraint check-then-write path.
        await db.execute(
            """
            UPDATE loops
            SET status = 'COMPLETED', resolution = 'deduped', completed_at = updated_at
            WHERE status = 'PENDING'
              AND EXISTS (
                SELECT 1 FROM loops AS newer
                WHERE newer.owner_id = loops.owner_id
                  AND newer.persona_id = loops.persona_id
                  AND newer.kind = loops.kind
                  AND newer.dedupe_key = loops.dedupe_key
                  AND newer.status = 'PENDING'
                  AND (newer.created_at > loops.created_at
                       OR (newer.created_at = loops.created_at AND newer.loop_id > loops.loop_id))
              )
            """
        )
        await db.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_loops_pending_signature
            ON loops(owner_id, persona_id, kind, dedupe_key)
            WHERE status = 'PENDING'
            """
        )

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS memories (
                memory_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                persona_scope TEXT,
                memory_type TEXT NOT NULL,
                content TEXT NOT NULL,
                memory_key TEXT,
                embedding TEXT,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
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
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_loops_owner_status
            ON loops(owner_id, persona_id, status, created_at DESC);

            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                started_at TEXT NOT NULL,
                last_activity_at TEXT NOT NULL,
                ended_at TEXT,
                turn_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_open
            ON sessions(owner_id, persona_id, ended_at, last_activity_at DESC);

            CREATE TABLE IF NOT EXISTS session_summaries (
                session_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                summary TEXT NOT NULL DEFAULT '{}',
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_session_summaries_owner
            ON session_summaries(owner_id, persona_id, updated_at DESC);

            CREATE TABLE IF NOT EXISTS session_state (
                owner_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                rolling_summary TEXT NOT NULL DEFAULT '',
                state TEXT NOT NULL DEFAULT '{}',
                updated_at TEXT NOT NULL,
                PRIMARY KEY (owner_id, persona_id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                persona_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_owner_time
            ON messages(owner_id, persona_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS summary_spine (
                owner_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                content TEXT NOT NULL,
                message_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                PRIMARY KEY (owner_id, conversation_id, version)
            );
            """
        )
