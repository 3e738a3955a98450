from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

logger = logging.getLogger("companion_memory")


class EmbeddingClient:
    """OpenAI-compatible ``/embeddings`` client. ``embed`` never raises."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout_seconds: float = 5.0,
    ) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self.model = (model or "").strip()
        self.api_key = (api_key or "").strip()
        self.timeout = aiohttp.ClientTimeout(total=max(0.5, float(timeout_seconds)))
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def _extract_vector(data: Any) -> list[float] | None:
        if not isinstance(data, dict):
            return None
        items = data.get("data")
        if not isinstance(items, list) or not items:
            return None
        first = items[0]
        vector = first.get("embedding") if isinstance(first, dict) else None
        if not isinstance(vector, list) or not vector:
            return None
        try:
            return [float(value) for value in vector]
        except (TypeError, ValueError):
            return None

    async def embed(self, text: str) -> list[float] | None:
        cleaned = " ".join(str(text or "").split())
        if not cleaned or not self.base_url or not self.model:
            return None
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        try:
            async with self._session.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": cleaned[:8000]},
            ) as response:
                body = await response.text()
                if response.status != 200:
                    logger.warning("Embedding request failed: status=%s body=%s", response.status, body[:200])
                    return None
                return self._extract_vector(json.loads(body))
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
            logger.warning("Embedding request error: %s", exc)
            return None
