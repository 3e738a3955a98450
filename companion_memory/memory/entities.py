"""Entity key normalization and metadata sanitizers.

Every write path runs user- or model-supplied metadata through these helpers before it
reaches storage, so the rest of the package can rely on canonical ``type:slug`` keys.
None of the functions here raise on bad input; invalid fields are dropped.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Iterable

ENTITY_TYPES = ("person", "place", "org", "project")
FACT_TYPES = ("fact", "preference", "relationship", "friction", "habit")

MAX_ENTITY_REFS = 5
MAX_ENTITY_LABEL_CHARS = 100

ENTITY_KEY_PATTERN = re.compile(r"^(person|place|org|project):([a-z0-9_]+)$")


def slugify(raw_name: object) -> str:
    text = unicodedata.normalize("NFKD", str(raw_name or ""))
    text = text.encode("ascii", "ignore").decode("ascii").lower().strip()
    text = re.sub(r"[^\w\s-]", " ", text, flags=re.ASCII)
    text = re.sub(r"[\s-]+", "_", text)
    text = re.sub(r"_+", "_", text)
    return text.strip("_")


def normalize_entity_key(entity_type: object, raw_name: object) -> str:
    """Return ``type:slug`` or an empty string when either half is unusable."""
    kind = str(entity_type or "").strip().lower()
    if kind not in ENTITY_TYPES:
        return ""
    slug = slugify(raw_name)
    if not slug:
        return ""
    return f"{kind}:{slug}"


def parse_entity_key(key: object) -> tuple[str, str] | None:
    if not isinstance(key, str):
        return None
    match = ENTITY_KEY_PATTERN.match(key)
    if match is None:
        return None
    return match.group(1), match.group(2)


def sanitize_entity_refs(raw: object) -> list[str]:
    if not isinstance(raw, (list, tuple)):
        return []
    refs: list[str] = []
    for item in raw:
        if not isinstance(item, str) or not ENTITY_KEY_PATTERN.match(item):
            continue
        if item in refs:
            continue
        refs.append(item)
        if len(refs) >= MAX_ENTITY_REFS:
            break
    return refs


def canonicalize_entity_refs(*ref_lists: Iterable[object]) -> list[str]:
    """Re-normalize loosely formatted refs (``person:Mukesh``) and union them in order."""
    refs: list[str] = []
    for ref_list in ref_lists:
        if not isinstance(ref_list, (list, tuple, set, frozenset)):
            continue
        for raw in ref_list:
            if not isinstance(raw, str) or ":" not in raw:
                continue
            kind, _, name = raw.partition(":")
            key = normalize_entity_key(kind, name)
            if not key or key in refs:
                continue
            refs.append(key)
            if len(refs) >= MAX_ENTITY_REFS:
                return refs
    return refs


def sanitize_subtype(raw: object) -> dict[str, str] | None:
    if not isinstance(raw, dict):
        return None
    entity_type = raw.get("entityType", raw.get("entity_type"))
    fact_type = raw.get("factType", raw.get("fact_type"))
    result: dict[str, str] = {}
    if isinstance(entity_type, str) and entity_type.strip().lower() in ENTITY_TYPES:
        result["entityType"] = entity_type.strip().lower()
    if isinstance(fact_type, str) and fact_type.strip().lower() in FACT_TYPES:
        result["factType"] = fact_type.strip().lower()
    return result or None


def sanitize_importance(raw: object) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return 1
    if raw != raw or raw < 0 or raw > 3:
        return 1
    return int(round(raw))


def clamp_importance(raw: object, default: int = 1) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw != raw:
        return default
    return max(0, min(3, int(round(raw))))


def sanitize_entity_label(raw: object) -> str | None:
    if not isinstance(raw, str):
        return None
    label = raw.strip()
    if not label or len(label) > MAX_ENTITY_LABEL_CHARS:
        return None
    return label


def enforce_importance_for_pinned(importance: int, pinned: bool) -> int:
    if pinned:
        return max(importance, 3)
    return importance


def sanitize_metadata_fields(raw: dict[str, Any]) -> dict[str, Any]:
    """Sanitize the entity-related keys of a loosely typed metadata mapping."""
    cleaned: dict[str, Any] = {}
    subtype = sanitize_subtype(raw.get("subtype"))
    if subtype:
        cleaned["subtype"] = subtype
    refs = canonicalize_entity_refs(raw.get("entityRefs", raw.get("entity_refs")) or [])
    if refs:
        cleaned["entityRefs"] = refs
    label = sanitize_entity_label(raw.get("entityLabel", raw.get("entity_label")))
    if label:
        cleaned["entityLabel"] = label
    if "importance" in raw:
        cleaned["importance"] = sanitize_importance(raw.get("importance"))
    return cleaned
