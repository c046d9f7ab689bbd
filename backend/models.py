from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class MessageKind(str, Enum):
    CHAT = "chat"
    IMAGE = "image"
    STICKER = "sticker"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


class Direction(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


class ChatMode(str, Enum):
    MANUAL = "manual"
    ASSISTED = "assisted"
    AUTONOMOUS = "autonomous"


MEDIA_KINDS = frozenset(k.value for k in MessageKind if k is not MessageKind.CHAT)

# Older state files stored single-letter modes.
_LEGACY_MODES = {"a": ChatMode.MANUAL, "b": ChatMode.ASSISTED, "c": ChatMode.AUTONOMOUS}


def parse_mode(value: Any) -> Optional[ChatMode]:
    if isinstance(value, ChatMode):
        return value
    s = str(value or "").strip().lower()
    if s in _LEGACY_MODES:
        return _LEGACY_MODES[s]
    try:
        return ChatMode(s)
    except ValueError:
        return None


def coerce_mode(value: Any, default: ChatMode = ChatMode.MANUAL) -> ChatMode:
    mode = parse_mode(value)
    return default if mode is None else mode


def coerce_kind(value: Any) -> MessageKind:
    s = str(value or "").strip().lower()
    if s == "ptt":
        return MessageKind.AUDIO
    try:
        return MessageKind(s)
    except ValueError:
        return MessageKind.CHAT


# ============================================
# TIMESTAMPS
# ============================================

def format_iso(dt: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a trailing Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return format_iso(datetime.now(timezone.utc))


def iso_from_unix(seconds: Any) -> str:
    try:
        ts = float(seconds)
    except (TypeError, ValueError):
        return utc_now_iso()
    if ts <= 0:
        return utc_now_iso()
    return format_iso(datetime.fromtimestamp(ts, tz=timezone.utc))


def parse_iso_ms(value: Any) -> Optional[float]:
    """Epoch milliseconds for an ISO-8601 string, or None when it does not parse."""
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp() * 1000.0


def generate_message_id(prefix: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


# ============================================
# MESSAGE
# ============================================

@dataclass
class Message:
    id: str
    content: str
    timestamp: str
    direction: Direction
    kind: MessageKind = MessageKind.CHAT
    mime_type: Optional[str] = None
    is_assisted_original: bool = False
    is_assisted_rewrite: bool = False

    @property
    def timestamp_ms(self) -> Optional[float]:
        return parse_iso_ms(self.timestamp)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["direction"] = self.direction.value
        data["kind"] = self.kind.value
        if self.mime_type is None:
            data.pop("mime_type")
        return data

    def to_view(self) -> dict:
        """Wire shape used by the web client (camelCase, optional flags omitted)."""
        view = {
            "id": self.id,
            "subType": self.kind.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "direction": self.direction.value,
        }
        if self.mime_type:
            view["mimetype"] = self.mime_type
        if self.is_assisted_original:
            view["isOriginalInSemiAI"] = True
        if self.is_assisted_rewrite:
            view["isAIRewrite"] = True
        return view

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        # Accept both the current snake_case layout and the camelCase records
        # written by earlier releases.
        direction_raw = str(data.get("direction") or "").strip().lower()
        direction = Direction.SENT if direction_raw == Direction.SENT.value else Direction.RECEIVED
        content = data.get("content")
        if content is None:
            content = data.get("text", "")
        return cls(
            id=str(data.get("id") or ""),
            content=content if isinstance(content, str) else str(content),
            timestamp=str(data.get("timestamp") or ""),
            direction=direction,
            kind=coerce_kind(data.get("kind", data.get("subType"))),
            mime_type=data.get("mime_type", data.get("mimetype")) or None,
            is_assisted_original=bool(data.get("is_assisted_original", data.get("isOriginalInSemiAI", False))),
            is_assisted_rewrite=bool(data.get("is_assisted_rewrite", data.get("isAIRewrite", False))),
        )


def sort_by_timestamp(messages: list[Message]) -> list[Message]:
    """Display order: by timestamp, ties and unparseable timestamps kept in arrival order."""
    indexed = list(enumerate(messages))
    indexed.sort(key=lambda pair: (pair[1].timestamp_ms is None, pair[1].timestamp_ms or 0.0, pair[0]))
    return [m for _, m in indexed]
