from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from backend.models import MEDIA_KINDS, Direction, Message, MessageKind, coerce_kind, iso_from_unix
from backend.provider import (
    MessagingProvider,
    conversation_jid_for_event,
    media_to_base64,
    normalize_jid,
    serialized_message_id,
)

logger = logging.getLogger(__name__)

MEDIA_ERROR_PLACEHOLDER = "[Error processing media]"

SHORT_CONTENT_CHARS = 8
REFETCH_BELOW_CHARS = 20
BOT_RESOLVE_MAX_CHARS = 120
RECENT_SCAN_LIMIT = 80
LONGER_RECENT_SCAN_LIMIT = 120
LONGER_RECENT_WINDOW_S = 20

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")
_MEDIA_TYPES = MEDIA_KINDS | {"ptt"}


# ============================================
# PURE EXTRACTION HELPERS
# ============================================

def looks_like_base64_blob(value: Any) -> bool:
    return (
        isinstance(value, str)
        and len(value) > 200
        and bool(_BASE64_RE.match(value))
        and not any(ch.isspace() for ch in value)
    )


def _path(*keys: str) -> Callable[[dict], Any]:
    def extract(event: dict) -> Any:
        cur: Any = event
        for key in keys:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(key)
        return cur

    return extract


TEXT_EXTRACTORS: tuple[Callable[[dict], Any], ...] = (
    _path("body"),
    _path("caption"),
    _path("text"),
    _path("content"),
    _path("title"),
    _path("description"),
    _path("message", "conversation"),
    _path("message", "extendedTextMessage", "text"),
    _path("message", "extendedTextMessage", "matchedText"),
    _path("message", "extendedTextMessage", "canonicalUrl"),
    _path("message", "listResponseMessage", "title"),
    _path("message", "buttonsResponseMessage", "selectedDisplayText"),
    _path("message", "templateButtonReplyMessage", "selectedDisplayText"),
    _path("interactiveResponse", "body", "text"),
    _path("quotedMsg", "body"),
)


def _rich_fragments(event: dict) -> list[str]:
    rich = event.get("richResponse")
    fragments = rich.get("fragments") if isinstance(rich, dict) else None
    if not isinstance(fragments, list):
        return []
    parts = []
    for fragment in fragments:
        if isinstance(fragment, dict) and isinstance(fragment.get("text"), str):
            text = fragment["text"].strip()
            if text:
                parts.append(text)
    return parts


def text_candidates(event: Any) -> list[str]:
    if not isinstance(event, dict):
        return []
    raw: list[Any] = [extract(event) for extract in TEXT_EXTRACTORS]
    parts = _rich_fragments(event)
    if parts:
        raw.append(" ".join(parts))
        raw.extend(parts)
    out = []
    for value in raw:
        if not isinstance(value, str):
            continue
        value = value.strip()
        if value and not looks_like_base64_blob(value):
            out.append(value)
    return out


def extract_text(event: Any) -> str:
    """Longest usable text candidate on the event, or ''."""
    best = ""
    for candidate in text_candidates(event):
        if len(candidate) > len(best):
            best = candidate
    return best


def is_filtered_origin(event: dict) -> bool:
    """Group, status, channel and broadcast traffic is not handled."""
    sender = event.get("from") if isinstance(event.get("from"), str) else ""
    if event.get("isGroupMsg"):
        return True
    if sender == "status@broadcast" or event.get("isStatus") or event.get("type") == "status":
        return True
    if sender.endswith("@newsletter") or event.get("isNewsletter") or event.get("isChannel"):
        return True
    return sender.endswith("@broadcast") or bool(event.get("isBroadcast"))


def is_media_event(event: dict) -> bool:
    return bool(event.get("hasMedia")) or event.get("type") in _MEDIA_TYPES


def reference_ids(event: dict) -> list[str]:
    refs: list[str] = []
    for key in ("botResponseTargetId", "parentMsgId"):
        value = event.get(key)
        if isinstance(value, str) and value.strip() and value.strip() not in refs:
            refs.append(value.strip())
    return refs


def build_candidate_ids(fragment: str, known_remote_jids: Iterable[str], self_id: str = "") -> list[str]:
    """
    Serialized message ids worth trying for a bare key `fragment`.

    `self_id` is the serialized id of the event carrying the reference; its
    flag and remote part are reused in both orientations.
    """
    ref = (fragment or "").strip()
    if not ref:
        return []
    out: list[str] = []

    def add(candidate: str) -> None:
        candidate = candidate.strip()
        if candidate and candidate not in out:
            out.append(candidate)

    add(ref)
    for remote in known_remote_jids:
        if isinstance(remote, str) and "@" in remote:
            add(f"false_{remote}_{ref}")
            add(f"true_{remote}_{ref}")

    parts = (self_id or "").split("_")
    if len(parts) >= 3:
        flag, remote = parts[0], parts[1]
        add(f"{flag}_{remote}_{ref}")
        add(f"{'false' if flag == 'true' else 'true'}_{remote}_{ref}")
    return out


def _unix(event: Any) -> float:
    try:
        return float((event or {}).get("t") or 0)
    except (TypeError, ValueError, AttributeError):
        return 0.0


def _id_tail(message_id: str) -> str:
    return message_id.split("_")[-1] if message_id else ""


def score_recent_candidate(event: dict, item: dict, text: str) -> int:
    """Rank a recent chat message as the full form of a placeholder `event`."""
    current_id = serialized_message_id(event)
    item_id = serialized_message_id(item)
    current_ts = _unix(event)
    item_ts = _unix(item)

    score = len(text)
    if item_id and current_id and item_id == current_id:
        score += 2000
    tail = _id_tail(current_id)
    if tail and tail == _id_tail(item_id):
        score += 1500
    if current_ts and item_ts and abs(item_ts - current_ts) <= 3:
        score += 800
    if current_ts and item_ts and abs(item_ts - current_ts) <= 10:
        score += 300
    if item.get("from") == event.get("from"):
        score += 50
    return score


# ============================================
# RESOLVER
# ============================================

@dataclass
class Resolution:
    kind: MessageKind
    content: str
    mime_type: Optional[str] = None
    # Set when a placeholder event was replaced by the message it refers to.
    recovered_jid: Optional[str] = None
    recovered: Optional[Message] = None


class ContentResolver:
    """
    Turns raw provider events into (kind, content, mime type). Text events go
    through a cheap field scan first and only escalate to provider lookups when
    the scan yields nothing or a placeholder.
    """

    def __init__(self, provider: MessagingProvider, bot_jids: Iterable[str] = ()):
        self.provider = provider
        self.bot_jids = {normalize_jid(j) for j in bot_jids if normalize_jid(j)}

    def is_bot(self, jid: str) -> bool:
        return jid in self.bot_jids

    async def resolve(self, event: dict) -> Optional[Resolution]:
        """None means the event carries nothing user-visible and should be dropped."""
        if not isinstance(event, dict) or is_filtered_origin(event):
            return None
        if is_media_event(event):
            return await self._resolve_media(event)
        return await self._resolve_text(event)

    async def _resolve_media(self, event: dict) -> Resolution:
        try:
            data = await self.provider.download_media(event)
            content = media_to_base64(data)
            if not content:
                raise ValueError("empty media payload")
        except Exception as e:
            logger.warning("Media download failed id=%s type=%s: %s", serialized_message_id(event), event.get("type"), e)
            return Resolution(kind=MessageKind.CHAT, content=MEDIA_ERROR_PLACEHOLDER)

        kind = coerce_kind(event.get("type"))
        if kind == MessageKind.CHAT:
            kind = MessageKind.DOCUMENT
        return Resolution(kind=kind, content=content, mime_type=event.get("mimetype") or None)

    async def _fetch(self, message_id: str) -> Optional[dict]:
        if not message_id:
            return None
        try:
            return await self.provider.get_message_by_id(message_id)
        except Exception as e:
            logger.debug("getMessageById(%s) failed: %s", message_id, e)
            return None

    async def _recent_messages(self, jid: str) -> list[dict]:
        try:
            return await self.provider.get_all_messages_in_chat(f"{jid}@c.us", True, False)
        except Exception as e:
            logger.debug("Recent message scan failed for %s: %s", jid, e)
            return []

    async def _resolve_reference(self, event: dict, ref: str, jid: str) -> Optional[dict]:
        remotes = [event.get("from"), event.get("to"), event.get("invokedBotWid"), f"{jid}@c.us"]
        for candidate in build_candidate_ids(ref, remotes, serialized_message_id(event)):
            found = await self._fetch(candidate)
            if found:
                return found
        return None

    async def _best_recent_text(self, event: dict, jid: str) -> str:
        best_score, best_text = -1, ""
        for item in (await self._recent_messages(jid))[-RECENT_SCAN_LIMIT:]:
            text = extract_text(item)
            if not text:
                continue
            score = score_recent_candidate(event, item, text)
            if score > best_score:
                best_score, best_text = score, text
        return best_text

    async def _longer_recent_received(self, event: dict, jid: str, current: str) -> str:
        current_ts = _unix(event)
        best = ""
        for item in (await self._recent_messages(jid))[-LONGER_RECENT_SCAN_LIMIT:]:
            if item.get("fromMe"):
                continue
            text = extract_text(item)
            if not text or len(text) <= len(current):
                continue
            item_ts = _unix(item)
            if current_ts and item_ts and abs(item_ts - current_ts) > LONGER_RECENT_WINDOW_S:
                continue
            if len(text) > len(best):
                best = text
        return best

    def _recovered(self, ref: str, referenced: dict, text: str, fallback_jid: str, fallback_ts: str) -> Resolution:
        from_me = bool(referenced.get("fromMe"))
        key = "to" if from_me else "from"
        jid = normalize_jid(referenced.get(key)) or fallback_jid
        timestamp = iso_from_unix(referenced["t"]) if referenced.get("t") else fallback_ts
        message = Message(
            id=serialized_message_id(referenced) or ref,
            content=text,
            timestamp=timestamp,
            direction=Direction.SENT if from_me else Direction.RECEIVED,
        )
        return Resolution(kind=MessageKind.CHAT, content=text, recovered_jid=jid, recovered=message)

    async def _resolve_text(self, event: dict) -> Optional[Resolution]:
        jid = conversation_jid_for_event(event)
        from_bot = self.is_bot(jid) and not event.get("fromMe")
        refs = reference_ids(event)
        content = extract_text(event)

        needs_refetch = (
            len(content) < REFETCH_BELOW_CHARS
            or (from_bot and len(content) <= BOT_RESOLVE_MAX_CHARS)
            or bool(refs or event.get("invokedBotWid") or event.get("botPluginType"))
        )
        if needs_refetch:
            refreshed = extract_text(await self._fetch(serialized_message_id(event)))
            if len(refreshed) > len(content):
                content = refreshed

        if not content:
            fallback_ts = iso_from_unix(event.get("t"))
            for ref in refs:
                referenced = await self._resolve_reference(event, ref, jid)
                text = extract_text(referenced)
                if referenced and text:
                    return self._recovered(ref, referenced, text, jid, fallback_ts)
            logger.debug("Dropping event without text id=%s type=%s", serialized_message_id(event), event.get("type"))
            return None

        if len(content) <= SHORT_CONTENT_CHARS and refs:
            for ref in refs:
                text = extract_text(await self._resolve_reference(event, ref, jid))
                if len(text) > len(content):
                    content = text

        if from_bot and len(content) <= BOT_RESOLVE_MAX_CHARS:
            recent = await self._best_recent_text(event, jid)
            if len(recent) > len(content):
                content = recent
            longer = await self._longer_recent_received(event, jid, content)
            if len(longer) > len(content):
                content = longer

        return Resolution(kind=MessageKind.CHAT, content=content)
