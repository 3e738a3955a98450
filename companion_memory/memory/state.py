from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any, Callable

from ..common import utc_now
from .models import SessionStateRecord


def get_path(state: dict[str, Any], path: str, default: Any = None) -> Any:
    node: Any = state
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_path(state: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    node = state
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


class SessionStateService:
    """Read-modify-write access to the per ``(owner, persona)`` state bag.

    Updates from this process are serialized per scope; the store row stays the source of truth.
    """

    def __init__(self, store: Any) -> None:
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _scope_key(owner_id: str, persona_id: str) -> str:
        return f"{owner_id}:{persona_id}"

    def _get_lock(self, owner_id: str, persona_id: str) -> asyncio.Lock:
        key = self._scope_key(owner_id, persona_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _prune_locks(self) -> None:
        if len(self._locks) > 100:
            stale = [key for key, value in self._locks.items() if not value.locked()]
            for key in stale:
                del self._locks[key]

    async def get(self, owner_id: str, persona_id: str) -> SessionStateRecord:
        record = await self.store.get_session_state(owner_id, persona_id)
        if record is None:
            return SessionStateRecord(
                owner_id=owner_id,
                persona_id=persona_id,
                rolling_summary="",
                state={},
                updated_at=utc_now(),
            )
        return record

    async def update(
        self,
        owner_id: str,
        persona_id: str,
        mutate: Callable[[dict[str, Any]], None],
        *,
        rolling_summary: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Apply ``mutate`` to a copy of the stored state and persist it; returns the new state."""
        lock = self._get_lock(owner_id, persona_id)
        try:
            async with lock:
                current = await self.get(owner_id, persona_id)
                state = copy.deepcopy(current.state)
                mutate(state)
                await self.store.upsert_session_state(
                    owner_id,
                    persona_id,
                    state=state,
                    rolling_summary=rolling_summary,
                    now=now,
                )
                return state
        finally:
            self._prune_locks()
