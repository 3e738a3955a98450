from __future__ import annotations

import asyncio
import json
import random
import re
from typing import Any

import aiohttp

from ..prompts.memory import build_json_only_system_prompt

_RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


def strip_json_fences(text: str) -> str:
    cleaned = (text or "").strip()
    cleaned = re.sub(r"<think>.*?</think>\s*", "", cleaned, flags=re.IGNORECASE | re.DOTALL).strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
        cleaned = re.sub(r"```$", "", cleaned).strip()
    if not cleaned.startswith("{"):
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start >= 0 and end > start:
            cleaned = cleaned[start : end + 1].strip()
    return cleaned


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Best-effort parse of a model reply that should contain one JSON object."""
    cleaned = strip_json_fences(text)
    if not cleaned:
        return None
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        # Common repair: trailing commas before a closing bracket.
        repaired = re.sub(r",\s*([}\]])", r"\1", cleaned)
        try:
            parsed = json.loads(repaired)
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


class ChatCompletionClient:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    backend_name = "openai_compatible"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout_seconds: float = 20.0,
        temperature: float = 0.2,
    ) -> None:
        self.base_url = (base_url or "http://127.0.0.1:11434/v1").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Chat completion model cannot be empty")
        self.api_key = (api_key or "").strip()
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self.temperature = float(temperature)
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

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def _request(self, payload: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(self._endpoint(), json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        parsed = json.loads(text)
                        if isinstance(parsed, dict):
                            return parsed
                        raise RuntimeError("Completion endpoint returned non-object JSON response")
                    if response.status not in _RETRIABLE_STATUSES:
                        raise RuntimeError(f"Completion error {response.status}: {text[:300]}")
                    last_error = RuntimeError(f"Completion retriable error {response.status}: {text[:300]}")
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
                last_error = exc
            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.25))

        if last_error is not None:
            raise RuntimeError(f"Completion request failed after retries: {last_error}")
        raise RuntimeError("Completion request failed without explicit error")

    @staticmethod
    def _extract_message_text(data: dict[str, Any]) -> str:
        choices = data.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0]
            if isinstance(first, dict):
                message = first.get("message")
                if isinstance(message, dict):
                    content = message.get("content")
                    if isinstance(content, str) and content.strip():
                        return content
                text = first.get("text")
                if isinstance(text, str) and text.strip():
                    return text
        raise RuntimeError("Completion endpoint returned empty message content")

    @staticmethod
    def _map_messages(messages: list[dict[str, str]]) -> list[dict[str, str]]:
        mapped: list[dict[str, str]] = []
        for msg in messages:
            role = str(msg.get("role", "")).strip().lower() or "user"
            if role not in {"system", "user", "assistant"}:
                role = "user"
            content = str(msg.get("content", "")).strip()
            if not content:
                continue
            mapped.append({"role": role, "content": content})
        return mapped

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int = 600,
        json_mode: bool = False,
    ) -> str:
        mapped = self._map_messages(messages)
        if not mapped:
            raise ValueError("complete() needs at least one non-empty message")
        payload: dict[str, Any] = {
            "model": (model or self.model),
            "messages": mapped,
            "temperature": self.temperature if temperature is None else float(temperature),
        }
        if int(max_output_tokens) > 0:
            payload["max_tokens"] = int(max_output_tokens)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        data = await self._request(payload)
        return self._extract_message_text(data)

    async def json_chat(
        self,
        messages: list[dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> dict[str, Any] | None:
        """Return the parsed JSON object of the reply, or ``None`` when it is not one."""
        guarded = [{"role": "system", "content": build_json_only_system_prompt(schema_hint)}, *messages]
        raw = await self.complete(
            guarded,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            json_mode=True,
        )
        return parse_json_object(raw)
