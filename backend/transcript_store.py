from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Optional

from backend.dedup import find_duplicate
from backend.models import Message, MessageKind, sort_by_timestamp

logger = logging.getLogger(__name__)


def _id_fragment(message_id: str) -> str:
    """Everything after the first underscore-separated segment ("true_123@c.us_ABC" -> "123@c.us_ABC")."""
    parts = (message_id or "").split("_")
    return "_".join(parts[1:])


def _id_tail(message_id: str) -> str:
    parts = (message_id or "").split("_")
    return parts[-1] if len(parts) > 1 else ""


def ids_partially_match(stored_id: str, search_id: str) -> bool:
    """
    Loose id comparison used when an exact delete misses.

    Local sends get a provisional id and the provider later reports its own
    serialized id for the same message, so the two usually only share the
    trailing key segment.
    """
    if not stored_id or not search_id:
        return False
    if stored_id == search_id:
        return True
    stored_frag = _id_fragment(stored_id)
    search_frag = _id_fragment(search_id)
    if search_frag and search_frag in stored_id:
        return True
    if stored_frag and stored_frag in search_id:
        return True
    stored_tail = _id_tail(stored_id)
    search_tail = _id_tail(search_id)
    return bool(stored_tail and stored_tail == search_tail)


class TranscriptStore:
    """
    Per-conversation message log backed by a single JSON file.

    The whole file is loaded once into memory and rewritten on every change.
    A failed write leaves the in-memory copy authoritative; the next successful
    write persists it.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._chats: Optional[dict[str, list[Message]]] = None
        self._dirty = False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, list[Message]]:
        chats: dict[str, list[Message]] = {}
        try:
            if self.path.is_file():
                data = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    for jid, raw_messages in data.items():
                        # Legacy layout: {"jid": {"messages": [...]}}
                        if isinstance(raw_messages, dict):
                            raw_messages = raw_messages.get("messages", [])
                        if not isinstance(raw_messages, list):
                            continue
                        msgs: list[Message] = []
                        for raw in raw_messages:
                            if isinstance(raw, dict):
                                msgs.append(Message.from_dict(raw))
                        chats[str(jid)] = msgs
        except Exception:
            logger.exception("Failed to load transcript store %s", self.path)
            return {}
        return chats

    def _data(self) -> dict[str, list[Message]]:
        if self._chats is None:
            self._chats = self._load()
        return self._chats

    def reload(self) -> None:
        if self._dirty:
            # Unsaved changes win over the file.
            self._flush()
            return
        self._chats = self._load()

    def flush_pending(self) -> bool:
        """Retry a write that failed earlier. No-op when nothing is pending."""
        if not self._dirty:
            return True
        return self._flush()

    def _flush(self) -> bool:
        data = {jid: [m.to_dict() for m in msgs] for jid, msgs in self._data().items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(self.path)
        except Exception:
            self._dirty = True
            logger.exception("Failed to write transcript store %s", self.path)
            return False
        self._dirty = False
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def conversation_ids(self) -> list[str]:
        return list(self._data().keys())

    def has_conversation(self, jid: str) -> bool:
        return jid in self._data()

    def get_messages(self, jid: str) -> list[Message]:
        """Arrival order. Use sort_by_timestamp() before display."""
        return list(self._data().get(jid, []))

    def find_message(self, jid: str, message_id: str) -> Optional[Message]:
        for m in self._data().get(jid, []):
            if m.id == message_id:
                return m
        return None

    def get_chat_history(self, jid: str, limit: int = 10) -> list[Message]:
        """Last `limit` text messages of a conversation."""
        text_only = [m for m in self._data().get(jid, []) if m.kind == MessageKind.CHAT]
        if limit <= 0:
            return []
        return text_only[-limit:]

    def last_activity_ms(self, jid: str) -> float:
        latest = 0.0
        for m in self._data().get(jid, []):
            ts = m.timestamp_ms
            if ts is not None and ts > latest:
                latest = ts
        return latest

    def list_conversations(self, page: int = 1, limit: int = 50) -> dict:
        """Paginated conversations, most recent message first."""
        page = max(1, int(page or 1))
        limit = max(1, int(limit or 50))
        offset = (page - 1) * limit

        jids = list(self._data().keys())
        jids.sort(key=self.last_activity_ms, reverse=True)
        total = len(jids)
        selected = jids[offset : offset + limit]
        return {
            "conversations": [(jid, sort_by_timestamp(self.get_messages(jid))) for jid in selected],
            "pagination": {
                "currentPage": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit) if total else 0,
                "hasMore": offset + limit < total,
            },
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def accept(self, jid: str, message: Message) -> bool:
        """
        Deduplication gate + insert. Returns True when the message was stored,
        False when it duplicates something already recorded for `jid`.
        """
        chats = self._data()
        existing = chats.get(jid, [])
        dup = find_duplicate(existing, message)
        if dup is not None:
            logger.debug("Duplicate message rejected jid=%s id=%s matches=%s", jid, message.id, dup.id)
            return False
        chats.setdefault(jid, []).append(message)
        self._flush()
        return True

    def ensure_conversation(self, jid: str) -> bool:
        chats = self._data()
        if jid in chats:
            return False
        chats[jid] = []
        self._flush()
        return True

    def delete_message(self, jid: str, message_id: str) -> bool:
        msgs = self._data().get(jid)
        if not msgs or not message_id:
            return False
        kept = [m for m in msgs if m.id != message_id]
        if len(kept) == len(msgs):
            return False
        self._data()[jid] = kept
        self._flush()
        return True

    def delete_message_partial(self, jid: str, message_id: str) -> bool:
        msgs = self._data().get(jid)
        if not msgs or not message_id:
            return False
        kept = [m for m in msgs if not ids_partially_match(m.id, message_id)]
        if len(kept) == len(msgs):
            return False
        self._data()[jid] = kept
        self._flush()
        return True

    def delete_conversation(self, jid: str) -> bool:
        chats = self._data()
        if jid not in chats:
            return False
        del chats[jid]
        self._flush()
        return True
