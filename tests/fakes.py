from __future__ import annotations

import asyncio
import re
import zlib

from companion_memory.services.continuity_client import RequestTrace


class FakeClassifier:
    backend_name = "fake"
    model = "fake-judge"

    def __init__(self, payload: object = None, *, error: Exception | None = None, delay: float = 0.0) -> None:
        self.payload = payload if payload is not None else {"memories": [], "loops": []}
        self.error = error
        self.delay = delay
        self.calls: list[dict[str, object]] = []

    async def json_chat(self, messages, **kwargs):  # type: ignore[no-untyped-def]
        self.calls.append({"messages": messages, "kwargs": kwargs})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if isinstance(self.payload, list):
            # one payload per call, the last one repeats
            index = min(len(self.calls), len(self.payload)) - 1
            return self.payload[index]
        return self.payload


class FakeLLM:
    model = "fake-summary"

    def __init__(
        self,
        text: str = "They talked about their evening walk.",
        *,
        json_payload: object = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.text = text
        self.json_payload = json_payload
        self.error = error
        self.delay = delay
        self.complete_calls: list[dict[str, object]] = []
        self.json_calls: list[dict[str, object]] = []

    async def complete(self, messages, **kwargs):  # type: ignore[no-untyped-def]
        self.complete_calls.append({"messages": messages, "kwargs": kwargs})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text

    async def json_chat(self, messages, **kwargs):  # type: ignore[no-untyped-def]
        self.json_calls.append({"messages": messages, "kwargs": kwargs})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.json_payload


class FakeEmbedder:
    """Bag-of-words vectors hashed into a fixed number of buckets."""

    def __init__(self, dims: int = 32, *, fail: bool = False) -> None:
        self.dims = dims
        self.fail = fail
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float] | None:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding backend down")
        vector = [0.0] * self.dims
        for word in re.findall(r"[a-z0-9]+", text.casefold()):
            vector[zlib.crc32(word.encode("utf-8")) % self.dims] += 1.0
        return vector if any(vector) else None


class FakeContinuity:
    def __init__(
        self,
        brief_payload: object = None,
        *,
        brief_error: Exception | None = None,
        brief_delay: float = 0.0,
        ingest_ok: bool = True,
        healthy: bool = True,
    ) -> None:
        self.brief_payload = brief_payload
        self.brief_error = brief_error
        self.brief_delay = brief_delay
        self.ingest_ok = ingest_ok
        self.healthy = healthy
        self.health_calls = 0
        self.brief_calls: list[dict[str, object]] = []
        self.ingest_calls: list[dict[str, object]] = []

    async def brief(self, payload):  # type: ignore[no-untyped-def]
        self.brief_calls.append(payload)
        if self.brief_delay:
            await asyncio.sleep(self.brief_delay)
        if self.brief_error is not None:
            raise self.brief_error
        return self.brief_payload

    async def ingest(self, session_id, messages, window):  # type: ignore[no-untyped-def]
        self.ingest_calls.append({"session_id": session_id, "messages": list(messages), "window": dict(window)})
        if self.ingest_ok:
            return RequestTrace(ok=True, status=200, ms=3, url="http://continuity.test/session/ingest")
        return RequestTrace(
            ok=False,
            status=503,
            ms=7,
            url="http://continuity.test/session/ingest",
            error="service unavailable",
        )

    async def health(self):  # type: ignore[no-untyped-def]
        self.health_calls += 1
        if self.healthy:
            return RequestTrace(ok=True, status=200, ms=1, url="http://continuity.test/health")
        return RequestTrace(ok=False, status=None, ms=1, url="http://continuity.test/health", error="exception: refused")
