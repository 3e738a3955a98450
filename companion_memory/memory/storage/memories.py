from __future__ import annotations

import heapq
from datetime import datetime
from typing import Any, Sequence

import aiosqlite

from ...common import parse_dt, to_iso, utc_now
from ..models import MEMORY_TYPES, MemoryMetadata, MemoryRecord
from ..scoring import cosine_similarity
from .utils import dump_json, load_embedding, load_json_dict, merge_memory_metadata, new_id

_MEMORY_COLUMNS = (
    "memory_id, owner_id, persona_scope, memory_type, content, memory_key, metadata, "
    "created_at, updated_at, embedding IS NOT NULL AS has_embedding"
)
_NOT_ARCHIVED_SQL = "COALESCE(json_extract(metadata, '$.status'), 'ACTIVE') <> 'ARCHIVED'"


def _memory_from_row(row: Any, *, similarity: float | None = None) -> MemoryRecord:
    created_at = parse_dt(row["created_at"]) or utc_now()
    return MemoryRecord(
        memory_id=str(row["memory_id"]),
        owner_id=str(row["owner_id"]),
        persona_scope=row["persona_scope"],
        memory_type=str(row["memory_type"]),
        content=str(row["content"]),
        memory_key=row["memory_key"],
        metadata=MemoryMetadata.from_dict(load_json_dict(row["metadata"])),
        created_at=created_at,
        updated_at=parse_dt(row["updated_at"]) or created_at,
        has_embedding=bool(row["has_embedding"]),
        similarity=similarity,
    )


def _scope_clause(persona_id: str | None) -> tuple[str, list[Any]]:
    if persona_id is None:
        return "", []
    return " AND (persona_scope = ? OR persona_scope IS NULL)", [persona_id]


def _types_clause(types: Sequence[str]) -> tuple[str, list[Any]]:
    allowed = [value for value in types if value in MEMORY_TYPES] or list(MEMORY_TYPES)
    marks = ",".join("?" for _ in allowed)
    return f" AND memory_type IN ({marks})", allowed


class MemoryRecordsMixin:
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
        """Insert a memory or merge into the row holding the same ``(owner_id, memory_key)``.

        Returns the stored record and whether a new row was created. The read-merge-write runs
        inside an immediate transaction so concurrent writers in this database serialize.
        """
        stamp = to_iso(now or utc_now())
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                existing = None
                if memory_key:
                    existing = await self._fetch_memory_by_key(db, owner_id, memory_key)

                if existing is None:
                    memory_id = new_id()
                    await db.execute(
                        """
                        INSERT INTO memories (
                            memory_id, owner_id, persona_scope, memory_type, content,
                            memory_key, metadata, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            memory_id,
                            owner_id,
                            persona_scope,
                            memory_type,
                            content,
                            memory_key,
                            dump_json(metadata.to_dict()),
                            stamp,
                            stamp,
                        ),
                    )
                    created = True
                else:
                    memory_id = existing.memory_id
                    merged = merge_memory_metadata(existing.metadata, metadata)
                    await db.execute(
                        "UPDATE memories SET metadata = ?, updated_at = ? WHERE memory_id = ?",
                        (dump_json(merged.to_dict()), stamp, memory_id),
                    )
                    created = False
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

            record = await self._fetch_memory(db, memory_id)
        if record is None:
            raise RuntimeError(f"memory {memory_id} vanished after upsert")
        return record, created

    async def _fetch_memory(self, db: aiosqlite.Connection, memory_id: str) -> MemoryRecord | None:
        async with db.execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE memory_id = ?",
            (memory_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _memory_from_row(row) if row else None

    async def _fetch_memory_by_key(
        self,
        db: aiosqlite.Connection,
        owner_id: str,
        memory_key: str,
    ) -> MemoryRecord | None:
        async with db.execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE owner_id = ? AND memory_key = ?",
            (owner_id, memory_key),
        ) as cursor:
            row = await cursor.fetchone()
        return _memory_from_row(row) if row else None

    async def get_memory(self, memory_id: str) -> MemoryRecord | None:
        async with self._connect() as db:
            return await self._fetch_memory(db, memory_id)

    async def get_memory_by_key(self, owner_id: str, memory_key: str) -> MemoryRecord | None:
        async with self._connect() as db:
            return await self._fetch_memory_by_key(db, owner_id, memory_key)

    async def set_memory_embedding(self, memory_id: str, embedding: Sequence[float]) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE memories SET embedding = ? WHERE memory_id = ?",
                (dump_json([float(value) for value in embedding]), memory_id),
            )
            await db.commit()

    async def update_memory_metadata(
        self,
        memory_id: str,
        metadata: MemoryMetadata,
        *,
        now: datetime | None = None,
    ) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE memories SET metadata = ?, updated_at = ? WHERE memory_id = ?",
                (dump_json(metadata.to_dict()), to_iso(now or utc_now()), memory_id),
            )
            await db.commit()

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
        scope_sql, scope_args = _scope_clause(persona_id)
        types_sql, types_args = _types_clause(types)
        sql = f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE owner_id = ?{scope_sql}{types_sql}"
        args: list[Any] = [owner_id, *scope_args, *types_args]
        if not include_archived:
            sql += f" AND {_NOT_ARCHIVED_SQL}"
        sql += " ORDER BY created_at DESC, memory_id DESC" if newest_first else " ORDER BY created_at ASC, memory_id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(max(1, int(limit)))
        async with self._connect() as db:
            async with db.execute(sql, args) as cursor:
                rows = await cursor.fetchall()
        return [_memory_from_row(row) for row in rows]

    async def vector_candidates(
        self,
        owner_id: str,
        persona_id: str | None,
        query_embedding: Sequence[float],
        *,
        limit: int = 50,
        types: Sequence[str] = MEMORY_TYPES,
    ) -> list[MemoryRecord]:
        """Nearest embedded memories for the scope, most similar first.

        SQLite has no vector index, so candidates are ranked by cosine similarity in Python.
        Archived rows are returned too; callers filter them after the prefilter.
        """
        scope_sql, scope_args = _scope_clause(persona_id)
        types_sql, types_args = _types_clause(types)
        sql = (
            f"SELECT {_MEMORY_COLUMNS}, embedding FROM memories "
            f"WHERE owner_id = ? AND embedding IS NOT NULL{scope_sql}{types_sql}"
        )
        async with self._connect() as db:
            async with db.execute(sql, [owner_id, *scope_args, *types_args]) as cursor:
                rows = await cursor.fetchall()

        scored: list[tuple[float, int, Any]] = []
        for index, row in enumerate(rows):
            vector = load_embedding(row["embedding"])
            if vector is None:
                continue
            scored.append((cosine_similarity(query_embedding, vector), index, row))
        best = heapq.nlargest(max(1, int(limit)), scored, key=lambda item: (item[0], -item[1]))
        return [_memory_from_row(row, similarity=similarity) for similarity, _, row in best]

    async def count_memories_created_since(
        self,
        owner_id: str,
        since: datetime | None,
        *,
        include_archived: bool = False,
    ) -> int:
        sql = "SELECT COUNT(*) FROM memories WHERE owner_id = ?"
        args: list[Any] = [owner_id]
        if since is not None:
            sql += " AND created_at > ?"
            args.append(to_iso(since))
        if not include_archived:
            sql += f" AND {_NOT_ARCHIVED_SQL}"
        async with self._connect() as db:
            async with db.execute(sql, args) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def list_memories_missing_embedding(self, *, limit: int = 50) -> list[MemoryRecord]:
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_MEMORY_COLUMNS}
                FROM memories
                WHERE embedding IS NULL AND {_NOT_ARCHIVED_SQL}
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (max(1, int(limit)),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_memory_from_row(row) for row in rows]

    async def list_recent_memory_owners(self, *, limit: int = 25) -> list[str]:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT owner_id, MAX(created_at) AS latest
                FROM memories
                GROUP BY owner_id
                ORDER BY latest DESC
                LIMIT ?
                """,
                (max(1, int(limit)),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [str(row["owner_id"]) for row in rows]
