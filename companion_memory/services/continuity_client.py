from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Sequence

import aiohttp

logger = logging.getLogger("companion_memory")


@dataclass(slots=True)
class RequestTrace:
    ok: bool
    status: int | None
    ms: int
    url: str
    error: str = ""
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "status": self.status, "ms": self.ms, "url": self.url, "error": self.error}


class ContinuityClient:
    """Client for the external continuity service (session ingest and context briefs)."""

    def __init__(
        self,
        *,
        base_url: str,
        tenant_id: str = "default",
        timeout_seconds: float = 3.0,
    ) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self.tenant_id = tenant_id
        self.timeout = aiohttp.ClientTimeout(total=max(0.2, float(timeout_seconds)))
        self._session: aiohttp.ClientSession | None = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request_json(self, method: str, path: str, payload: Any = None) -> RequestTrace:
        url = f"{self.base_url}{path}"
        if not self.base_url:
            return RequestTrace(ok=False, status=None, ms=0, url=url, error="missing base url")
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        request_id = uuid.uuid4().hex[:12]
        started = time.perf_counter()
        try:
            kwargs: dict[str, Any] = {}
            if method == "POST":
                kwargs["json"] = payload if payload is not None else {}
            async with self._session.request(method, url, **kwargs) as response:
                text = await response.text()
                ms = int((time.perf_counter() - started) * 1000)
                if response.status < 200 or response.status >= 300:
                    logger.warning(
                        "Continuity request failed: id=%s path=%s status=%s ms=%s",
                        request_id,
                        path,
                        response.status,
                        ms,
                    )
                    return RequestTrace(ok=False, status=response.status, ms=ms, url=url, error=text[:300])
                data = json.loads(text) if text.strip() else None
                return RequestTrace(ok=True, status=response.status, ms=ms, url=url, data=data)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
            ms = int((time.perf_counter() - started) * 1000)
            reason = "timeout" if isinstance(exc, asyncio.TimeoutError) else "exception"
            logger.warning("Continuity request error: id=%s path=%s reason=%s ms=%s", request_id, path, reason, ms)
            return RequestTrace(ok=False, status=None, ms=ms, url=url, error=f"{reason}: {exc}")

    async def ingest(
        self,
        session_id: str,
        messages: Sequence[dict[str, Any]],
        window: dict[str, Any],
    ) -> RequestTrace:
        payload = {
            "tenantId": self.tenant_id,
            "sessionId": session_id,
            "messages": list(messages),
            **window,
        }
        return await self._request_json("POST", "/session/ingest", payload)

    async def brief(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        body = {"tenantId": self.tenant_id, **payload}
        trace = await self._request_json("POST", "/brief", body)
        if not trace.ok or not isinstance(trace.data, dict):
            return None
        return trace.data

    async def health(self) -> RequestTrace:
        return await self._request_json("GET", "/health")
