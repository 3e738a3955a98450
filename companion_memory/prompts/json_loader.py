from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger("companion_memory.prompts")

PROMPTS_FILE_ENV = "MEMORY_PROMPTS_FILE"


def prompts_file_from_env() -> Path | None:
    raw = os.getenv(PROMPTS_FILE_ENV, "").strip()
    return Path(raw).expanduser() if raw else None


@dataclass(slots=True)
class _Loaded:
    path: Path | None
    mtime_ns: int | None
    overrides: dict[str, Any] = field(default_factory=dict)


class PromptOverrides:
    """Built-in prompt defaults with optional per-key overrides from a JSON file.

    The file is re-read whenever its path or mtime changes. An override is taken only for a
    known key whose value has the same JSON type as the default; anything else keeps the default.
    """

    def __init__(
        self,
        defaults: dict[str, Any],
        resolve_path: Callable[[], Path | None] = prompts_file_from_env,
    ) -> None:
        self._defaults = copy.deepcopy(defaults)
        self._resolve_path = resolve_path
        self._loaded = _Loaded(path=None, mtime_ns=None)

    def get(self, key: str) -> Any:
        overrides = self._current_overrides()
        value = overrides[key] if key in overrides else self._defaults[key]
        return copy.deepcopy(value)

    def text(self, key: str) -> str:
        return str(self.get(key))

    def _current_overrides(self) -> dict[str, Any]:
        path = self._resolve_path()
        mtime_ns = _mtime_ns(path)
        loaded = self._loaded
        if loaded.path == path and loaded.mtime_ns == mtime_ns:
            return loaded.overrides
        self._loaded = _Loaded(path=path, mtime_ns=mtime_ns, overrides=self._read(path, mtime_ns))
        return self._loaded.overrides

    def _read(self, path: Path | None, mtime_ns: int | None) -> dict[str, Any]:
        if path is None:
            return {}
        if mtime_ns is None:
            logger.warning("Prompt overrides file missing: %s (using defaults)", path)
            return {}
        try:
            payload = json.loads(path.read_text(encoding="utf-8-sig"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            logger.warning("Prompt overrides unreadable: %s (%s). Using defaults.", path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning("Prompt overrides root must be an object: %s (using defaults)", path)
            return {}

        accepted: dict[str, Any] = {}
        for key, value in payload.items():
            default = self._defaults.get(key)
            if default is None:
                logger.debug("Prompt override ignored, unknown key: %s", key)
            elif not _same_shape(default, value):
                logger.warning("Prompt override ignored, wrong type: key=%s", key)
            else:
                accepted[key] = value
        logger.info("Prompt overrides loaded: path=%s keys=%s", path, sorted(accepted))
        return accepted


def _mtime_ns(path: Path | None) -> int | None:
    if path is None:
        return None
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _same_shape(default: Any, value: Any) -> bool:
    if isinstance(default, str):
        return isinstance(value, str) and bool(value.strip())
    if isinstance(default, list):
        return isinstance(value, list) and all(isinstance(item, str) for item in value) and bool(value)
    if isinstance(default, dict):
        return isinstance(value, dict)
    return False
