from __future__ import annotations

from .storage.loops import MemoryLoopsMixin
from .storage.memories import MemoryRecordsMixin
from .storage.messages import MemoryMessagesMixin
from .storage.schema import MemorySchemaMixin
from .storage.sessions import MemorySessionsMixin
from .storage.spine import MemorySummarySpineMixin


class MemoryStore(
    MemorySchemaMixin,
    MemoryRecordsMixin,
    MemoryLoopsMixin,
    MemorySessionsMixin,
    MemoryMessagesMixin,
    MemorySummarySpineMixin,
):
    """SQLite-backed store for memories, loops, sessions, session state and the transcript."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with self._connect() as db:
            await db.execute("SELECT 1")

    async def close(self) -> None:
        # Connections are opened per call.
        return None
