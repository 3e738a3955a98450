from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .common import to_iso, utc_now

logger = logging.getLogger("companion_memory")


class BackgroundTaskSupervisor:
    """Runs fire-and-forget work with bounded concurrency, a per-task timeout and aggregated errors."""

    def __init__(self, *, max_concurrency: int = 4, default_timeout: float = 60.0) -> None:
        self.max_concurrency = max(1, int(max_concurrency))
        self.default_timeout = max(0.1, float(default_timeout))
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False
        self._stats: dict[str, Any] = {
            "submitted": 0,
            "succeeded": 0,
            "failed": 0,
            "timed_out": 0,
            "last_error": "",
            "last_error_at": None,
            "last_error_task": "",
        }

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        name: str,
        coro_factory: Callable[[], Awaitable[Any]],
        *,
        timeout: float | None = None,
    ) -> asyncio.Task[Any] | None:
        if self._closed:
            logger.warning("Background task rejected after close: %s", name)
            return None
        self._stats["submitted"] += 1
        task = asyncio.create_task(self._run(name, coro_factory, timeout or self.default_timeout), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _record_error(self, name: str, error: str) -> None:
        self._stats["last_error"] = error[:300]
        self._stats["last_error_at"] = to_iso(utc_now())
        self._stats["last_error_task"] = name

    async def _run(self, name: str, coro_factory: Callable[[], Awaitable[Any]], timeout: float) -> Any:
        async with self._semaphore:
            try:
                result = await asyncio.wait_for(coro_factory(), timeout=timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                self._stats["timed_out"] += 1
                self._record_error(name, f"timeout after {timeout:.1f}s")
                logger.warning("Background task timed out: %s after %.1fs", name, timeout)
                return None
            except Exception as exc:
                self._stats["failed"] += 1
                self._record_error(name, f"{type(exc).__name__}: {exc}")
                logger.exception("Background task failed: %s", name)
                return None
            self._stats["succeeded"] += 1
            return result

    def diagnostics(self) -> dict[str, Any]:
        return {**self._stats, "in_flight": len(self._tasks)}

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight work, including tasks submitted while draining. Returns ``False`` on timeout."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            if remaining == 0.0:
                return False
            _, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and loop.time() >= deadline:
                return False
        return True

    async def close(self, timeout: float = 5.0) -> None:
        self._closed = True
        if await self.drain(timeout):
            return
        leftovers = list(self._tasks)
        for task in leftovers:
            task.cancel()
        await asyncio.gather(*leftovers, return_exceptions=True)
        logger.warning("Cancelled %s background task(s) on close", len(leftovers))
