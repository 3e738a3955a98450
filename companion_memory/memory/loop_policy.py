from __future__ import annotations

import re
from typing import Sequence

from ..common import normalize_content, tokenize
from .entities import slugify
from .models import LOOP_KINDS, LoopRecord

HEDGE_RE = re.compile(
    r"\b(?:maybe|might|could|perhaps|possibly|probably|wish|hope|hoping|someday|if|"
    r"thinking about|considering)\b",
    re.IGNORECASE,
)
TIMEBOX_RE = re.compile(
    r"\b(?:today|tonight|tomorrow|by|eod|end of (?:the )?day|"
    r"this (?:morning|afternoon|evening|week|weekend)|"
    r"on (?:mon|tues|wednes|thurs|fri|satur|sun)day)\b"
    r"|\b\d{1,2}:\d{2}\s*(?:am|pm)?\b|\b\d{1,2}\s*(?:am|pm)\b",
    re.IGNORECASE,
)
EXPLICIT_WILL_RE = re.compile(
    r"\b(?:i will|i'll|i am going to|i'm going to|im going to|i'm gonna|i am gonna|i promise)\b",
    re.IGNORECASE,
)
COMPLETION_RE = re.compile(r"\b(?:done|finished|completed)\b", re.IGNORECASE)
PAST_REPORT_RE = re.compile(
    r"\b(?:i|we)\s+(?:just\s+|finally\s+|already\s+|actually\s+)?"
    r"(?:did|went|made|got|had|took|wrote|called|sent|walked|ran|finished|completed)\b",
    re.IGNORECASE,
)


def _plain(text: str) -> str:
    return str(text or "").replace("’", "'")


def normalize_loop_kind(raw: object) -> str:
    kind = str(raw or "").strip().upper()
    return kind if kind in LOOP_KINDS else "THREAD"


def should_downgrade_commitment(content: str) -> bool:
    """Hedged intentions without a timebox or an explicit "I will" are threads, not commitments."""
    text = _plain(content)
    if not HEDGE_RE.search(text):
        return False
    return not TIMEBOX_RE.search(text) and not EXPLICIT_WILL_RE.search(text)


def classify_loop_kind(raw_kind: object, content: str) -> str:
    kind = normalize_loop_kind(raw_kind)
    if kind == "COMMITMENT" and should_downgrade_commitment(content):
        return "THREAD"
    return kind


def loop_signature(content: str, dedupe_key: object = None) -> str:
    if isinstance(dedupe_key, str) and dedupe_key.strip():
        key = slugify(dedupe_key)
        if key:
            return key
    return normalize_content(content)


def is_completion_report(text: str) -> bool:
    plain = _plain(text)
    return bool(COMPLETION_RE.search(plain) or PAST_REPORT_RE.search(plain))


def find_completed_commitment(text: str, pending: Sequence[LoopRecord]) -> LoopRecord | None:
    """Pick the pending commitment a turn reports as done, if any.

    A bare "done" with a single pending commitment completes it. Otherwise the report must share
    a keyword with the commitment ("I did my walk today" vs "Go for a walk").
    """
    commitments = [loop for loop in pending if loop.kind == "COMMITMENT" and loop.is_pending]
    if not commitments:
        return None
    plain = _plain(text)
    explicit = COMPLETION_RE.search(plain) is not None
    if not explicit and not PAST_REPORT_RE.search(plain):
        return None
    if explicit and len(commitments) == 1:
        return commitments[0]

    words = tokenize(plain)
    best: LoopRecord | None = None
    best_overlap = 0
    # pending lists come newest first, so ties keep the newest
    for loop in commitments:
        overlap = len(words & tokenize(loop.content))
        if overlap > best_overlap:
            best = loop
            best_overlap = overlap
    return best
