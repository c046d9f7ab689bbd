from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from backend.content_resolver import ContentResolver, extract_text
from backend.models import Direction, Message, iso_from_unix
from backend.provider import MessagingProvider, chat_id_of, normalize_jid, serialized_message_id

logger = logging.getLogger(__name__)

BACKFILL_SCAN_LIMIT = 120

Publish = Callable[..., Awaitable[bool]]


def _unix(item: dict) -> float:
    try:
        return float(item.get("t") or 0)
    except (TypeError, ValueError):
        return 0.0


class ReconciliationSync:
    """
    Pulls messages sent from the primary device into the transcript.

    A per-conversation high-water mark (provider unix seconds) bounds each
    rescan. The mark advances past every message observed, whether or not
    the deduplication gate accepted it.
    """

    def __init__(
        self,
        provider: MessagingProvider,
        resolver: ContentResolver,
        publish: Publish,
        config_getter: Callable[[], dict],
    ):
        self.provider = provider
        self.resolver = resolver
        self.publish = publish
        self.config_getter = config_getter
        self.high_water: dict[str, float] = {}
        self.received_high_water: dict[str, float] = {}
        self._run_lock = asyncio.Lock()

    async def _store_item(self, jid: str, item: dict, direction: Direction) -> bool:
        resolution = await self.resolver.resolve(item)
        if resolution is None:
            return False
        if resolution.recovered is not None:
            return await self.publish(resolution.recovered_jid or jid, resolution.recovered)
        message_id = serialized_message_id(item)
        if not message_id:
            return False
        message = Message(
            id=message_id,
            content=resolution.content,
            timestamp=iso_from_unix(item.get("t")),
            direction=direction,
            kind=resolution.kind,
            mime_type=resolution.mime_type,
        )
        return await self.publish(jid, message)

    async def _sync_chat(self, jid: str, chat_id: str = "") -> int:
        messages = await self.provider.get_all_messages_in_chat(chat_id or f"{jid}@c.us", True, False)
        if not messages:
            return 0
        mark = self.high_water.get(jid, 0.0)
        fresh = sorted((m for m in messages if m.get("fromMe") and _unix(m) > mark), key=_unix)
        synced = 0
        for item in fresh:
            mark = max(mark, _unix(item))
            self.high_water[jid] = mark
            if await self._store_item(jid, item, Direction.SENT):
                synced += 1
        return synced

    async def sync_chat(self, jid: str) -> int:
        """On-demand sync for one conversation; failures are logged and count as zero."""
        if not jid or not self.provider.is_ready():
            return 0
        try:
            synced = await self._sync_chat(jid)
        except Exception as e:
            logger.warning("Sync failed for %s: %s", jid, e)
            return 0
        if synced:
            logger.info("Synced %d sent message(s) for %s", synced, jid)
        return synced

    async def run_once(self) -> dict:
        cfg = self.config_getter()
        limit = int(cfg.get("sync_chat_limit", 20))
        chats = await self.provider.get_all_chats()
        summary = {"chats": 0, "synced": 0, "errors": 0}
        for chat in chats[:limit]:
            chat_id = chat_id_of(chat)
            if not chat_id or "@g.us" in chat_id:
                continue
            jid = normalize_jid(chat_id)
            summary["chats"] += 1
            try:
                summary["synced"] += await self._sync_chat(jid, chat_id)
            except Exception as e:
                summary["errors"] += 1
                logger.warning("Sync failed for %s: %s", jid, e)
        return summary

    async def tick(self) -> Optional[dict]:
        """One full pass, or None when a previous pass is still running."""
        if self._run_lock.locked():
            logger.debug("Reconciliation pass still running; skipping tick")
            return None
        async with self._run_lock:
            return await self.run_once()

    async def run_forever(self) -> None:
        logger.info("Starting reconciliation sync loop")
        while True:
            cfg = self.config_getter()
            await asyncio.sleep(float(cfg.get("sync_interval_seconds", 5)))
            if not cfg.get("sync_enabled", True) or not self.provider.is_ready():
                continue
            try:
                summary = await self.tick()
            except Exception as e:
                logger.warning("Reconciliation pass failed: %s", e)
                continue
            if summary and summary["synced"]:
                logger.info("Reconciliation pass synced=%d chats=%d errors=%d", summary["synced"], summary["chats"], summary["errors"])

    async def backfill_received(self, jid: str) -> int:
        """Recover bot replies whose live event was a duplicate placeholder."""
        try:
            messages = await self.provider.get_all_messages_in_chat(f"{jid}@c.us", True, False)
        except Exception as e:
            logger.warning("Received backfill failed for %s: %s", jid, e)
            return 0
        mark = self.received_high_water.get(jid, 0.0)
        fresh = sorted(
            (m for m in messages[-BACKFILL_SCAN_LIMIT:] if not m.get("fromMe") and _unix(m) > mark),
            key=_unix,
        )
        inserted = 0
        for item in fresh:
            mark = max(mark, _unix(item))
            self.received_high_water[jid] = mark
            text = extract_text(item)
            message_id = serialized_message_id(item)
            if not text or not message_id:
                continue
            message = Message(
                id=message_id,
                content=text,
                timestamp=iso_from_unix(item.get("t")),
                direction=Direction.RECEIVED,
            )
            if await self.publish(jid, message):
                inserted += 1
        return inserted
