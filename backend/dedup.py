from __future__ import annotations

from typing import Iterable, Optional

from backend.models import Message

# The same logical send is reported twice: once by the local send path and
# once as the provider (or reconciliation) echo, usually a few seconds apart.
DUPLICATE_WINDOW_MS = 8000.0


def _same_logical_message(existing: Message, candidate: Message, candidate_content: str, candidate_ts: float) -> bool:
    existing_content = (existing.content or "").strip() if isinstance(existing.content, str) else ""
    if not existing_content:
        return False
    existing_ts = existing.timestamp_ms
    if existing_ts is None:
        return False
    if existing.direction != candidate.direction:
        return False
    if existing.kind != candidate.kind:
        return False
    if existing_content != candidate_content:
        return False
    return abs(existing_ts - candidate_ts) <= DUPLICATE_WINDOW_MS


def find_duplicate(existing: Iterable[Message], candidate: Message) -> Optional[Message]:
    """
    Return the stored message that makes `candidate` a duplicate, or None.

    Rules, in order:
      1. same id
      2. same trimmed content, direction and kind within DUPLICATE_WINDOW_MS
         (only when the candidate has text content and a parseable timestamp)
    """
    stored = list(existing)
    if candidate.id:
        for m in stored:
            if m.id == candidate.id:
                return m

    content = (candidate.content or "").strip() if isinstance(candidate.content, str) else ""
    candidate_ts = candidate.timestamp_ms
    if not content or candidate_ts is None:
        return None

    for m in stored:
        if _same_logical_message(m, candidate, content, candidate_ts):
            return m
    return None


def is_duplicate(existing: Iterable[Message], candidate: Message) -> bool:
    return find_duplicate(existing, candidate) is not None
