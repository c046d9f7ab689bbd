from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from backend.broadcaster import Broadcaster
from backend.contacts import ContactDirectory, ContactEntry
from backend.content_resolver import ContentResolver, is_filtered_origin
from backend.llm import LLMClient, soft_cap_words
from backend.mode_registry import ModeRegistry
from backend.models import (
    ChatMode,
    Direction,
    Message,
    MessageKind,
    coerce_kind,
    generate_message_id,
    iso_from_unix,
    utc_now_iso,
)
from backend.provider import (
    MessagingProvider,
    conversation_jid_for_event,
    normalize_jid,
    send_jid_candidates,
    serialized_message_id,
)
from backend.rewrite import rewrite_text
from backend.transcript_store import TranscriptStore

logger = logging.getLogger(__name__)


def message_payload(jid: str, message: Message, contact: Optional[ContactEntry] = None) -> dict:
    """Live-viewer event for one stored message."""
    payload = {"type": "message", "from": jid, **message.to_view()}
    if contact is not None:
        payload["contactName"] = contact.name
        payload["contactProfilePicUrl"] = contact.profilePicUrl
    return payload


def time_of_day_greeting(hour: int) -> str:
    if hour < 12:
        return "Good morning"
    if hour < 17:
        return "Good afternoon"
    return "Good evening"


def build_intro(hour: int, assistant_name: str, owner_name: str = "") -> str:
    greeting = time_of_day_greeting(hour)
    if owner_name:
        return f"{greeting}. This is {assistant_name}, Personal Assistant to {owner_name}. "
    return f"{greeting}. This is {assistant_name}, Personal Assistant. "


def with_intro(reply: str, intro: str, assistant_name: str) -> str:
    if reply.lower().startswith("good") and assistant_name and assistant_name in reply:
        return reply
    return intro + reply


def _sender_picture(event: dict) -> Optional[str]:
    sender = event.get("sender")
    thumb = sender.get("profilePicThumbObj") if isinstance(sender, dict) else None
    if not isinstance(thumb, dict):
        return None
    url = thumb.get("imgFull") or thumb.get("eurl") or thumb.get("img")
    return url if isinstance(url, str) and url else None


def as_data_url(content: str, mime_type: str) -> str:
    if content.startswith("data:"):
        return content
    return f"data:{mime_type or 'application/octet-stream'};base64,{content}"


class Dispatcher:
    """
    Ingestion pipeline and per-conversation mode behavior.

    Everything that stores a message goes through publish(), which runs the
    deduplication gate and the broadcast under one per-conversation lock so
    viewers see a conversation's messages in acceptance order.
    """

    def __init__(
        self,
        *,
        store: TranscriptStore,
        registry: ModeRegistry,
        resolver: ContentResolver,
        directory: ContactDirectory,
        broadcaster: Broadcaster,
        provider: MessagingProvider,
        llm_getter: Callable[[], Optional[LLMClient]],
        config_getter: Callable[[], dict],
    ):
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.directory = directory
        self.broadcaster = broadcaster
        self.provider = provider
        self.llm_getter = llm_getter
        self.config_getter = config_getter
        self.reconciler = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()

    def _lock_for(self, jid: str) -> asyncio.Lock:
        lock = self._locks.get(jid)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[jid] = lock
        return lock

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def publish(self, jid: str, message: Message, *, picture_url: Optional[str] = None) -> bool:
        """Dedup-gate `message` into `jid`; broadcast it when it was accepted."""
        async with self._lock_for(jid):
            if not self.store.accept(jid, message):
                return False
            contact = await self.directory.details(jid)
            if picture_url:
                contact = ContactEntry(name=contact.name, profilePicUrl=picture_url)
            await self.broadcaster.broadcast(message_payload(jid, message, contact))
        return True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_provider_event(self, event: dict) -> None:
        try:
            await self._ingest(event)
        except Exception:
            logger.exception("Failed to handle provider event id=%s", serialized_message_id(event))

    async def _ingest(self, event: dict) -> None:
        if not isinstance(event, dict) or is_filtered_origin(event):
            return
        jid = conversation_jid_for_event(event)
        if not jid:
            logger.debug("No conversation for event id=%s", serialized_message_id(event))
            return

        resolution = await self.resolver.resolve(event)
        if resolution is None:
            return
        if resolution.recovered is not None:
            await self.publish(resolution.recovered_jid or jid, resolution.recovered)
            return

        from_me = bool(event.get("fromMe"))
        message = Message(
            id=serialized_message_id(event) or generate_message_id("msg"),
            content=resolution.content,
            timestamp=iso_from_unix(event.get("t")),
            direction=Direction.SENT if from_me else Direction.RECEIVED,
            kind=resolution.kind,
            mime_type=resolution.mime_type,
        )

        accepted = await self.publish(jid, message, picture_url=_sender_picture(event))
        if not accepted:
            if self.reconciler is not None and self.resolver.is_bot(jid) and not from_me:
                await self.reconciler.backfill_received(jid)
            return

        if self.reconciler is not None:
            self.spawn(self.reconciler.sync_chat(jid))

        if (
            message.kind == MessageKind.CHAT
            and message.direction == Direction.RECEIVED
            and message.content.strip()
            and self.registry.get_mode(jid) == ChatMode.AUTONOMOUS
        ):
            await self.autonomous_reply(jid, message, reply_to=event.get("from"))

    def build_instruction(self, now: datetime | None = None) -> str:
        cfg = self.config_getter()
        return self.registry.build_instruction(
            training_text=str(cfg.get("ai_training") or ""),
            schedule_text=str(cfg.get("ai_schedule") or ""),
            now=now,
        )

    async def suggest_reply(self, text: str) -> str:
        """Draft a reply under the assistant instruction. Raises RuntimeError when no LLM is usable."""
        llm = self.llm_getter()
        if llm is None:
            raise RuntimeError("LLM is not configured")
        cfg = self.config_getter()
        reply = await llm.complete(text, self.build_instruction())
        return soft_cap_words(reply, int(cfg.get("reply_max_words", 25)))

    async def autonomous_reply(self, jid: str, inbound: Message, *, reply_to: Any = None) -> Optional[Message]:
        cfg = self.config_getter()
        try:
            reply = await self.suggest_reply(inbound.content)
        except Exception as e:
            logger.warning("Autonomous reply skipped for %s: %s", jid, e)
            return None
        if not reply:
            return None

        now_local = datetime.now()
        gap_ms = float(cfg.get("intro_gap_hours", 3)) * 3600 * 1000
        last_contact = self.registry.get_last_contact_ms(jid)
        if last_contact is None or time.time() * 1000 - last_contact > gap_ms:
            assistant_name = str(cfg.get("assistant_name") or "Ava")
            intro = build_intro(now_local.hour, assistant_name, str(cfg.get("owner_name") or ""))
            reply = with_intro(reply, intro, assistant_name)

        target = reply_to if isinstance(reply_to, str) and reply_to else f"{jid}@c.us"
        await self._provider_send_text([target], reply)
        self.registry.touch_last_contact(jid, datetime.now(timezone.utc))

        message = Message(
            id=generate_message_id("ai"),
            content=reply,
            timestamp=utc_now_iso(),
            direction=Direction.SENT,
        )
        await self.publish(jid, message)
        logger.info("Autonomous reply sent jid=%s chars=%d", jid, len(reply))
        return message

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _provider_send_text(self, candidates: list[str], text: str) -> bool:
        for target in candidates:
            try:
                await self.provider.send_text(target, text)
                return True
            except Exception as e:
                logger.debug("sendText via %s failed: %s", target, e)
        logger.warning("Provider send failed for all address forms (%s)", ", ".join(candidates))
        return False

    async def send_text(self, to: Any, text: str, *, client_id: str = "", skip_rewrite: bool = False) -> Optional[list[Message]]:
        """
        Viewer-initiated text send. Returns the records this call stored, or
        None when the recipient is not a valid number or the text is blank.
        """
        candidates = send_jid_candidates(to)
        if not candidates:
            logger.warning("Rejected send to invalid recipient %r", to)
            return None
        original = str(text or "")
        if not original.strip():
            logger.warning("Rejected blank send to %r", to)
            return None
        jid = normalize_jid(str(to))
        mode = self.registry.get_mode(jid)
        assisted = mode == ChatMode.ASSISTED and not skip_rewrite

        original_record = Message(
            id=client_id or generate_message_id("msg"),
            content=original,
            timestamp=utc_now_iso(),
            direction=Direction.SENT,
            is_assisted_original=mode == ChatMode.ASSISTED,
        )
        stored = []
        if await self.publish(jid, original_record):
            stored.append(original_record)

        final = original
        if assisted:
            final = await rewrite_text(self.llm_getter(), original)

        await self._provider_send_text(candidates, final)

        if final != original:
            rewrite_record = Message(
                id=generate_message_id("ai_rewrite"),
                content=final,
                timestamp=utc_now_iso(),
                direction=Direction.SENT,
                is_assisted_rewrite=True,
            )
            if await self.publish(jid, rewrite_record):
                stored.append(rewrite_record)
        return stored

    async def send_file(self, msg: dict) -> Optional[Message]:
        candidates = send_jid_candidates(msg.get("to"))
        content = msg.get("content")
        if not candidates or not isinstance(content, str) or not content:
            logger.warning("Rejected file send to %r", msg.get("to"))
            return None
        jid = normalize_jid(str(msg.get("to")))
        kind = coerce_kind(msg.get("subType"))
        if kind == MessageKind.CHAT:
            kind = MessageKind.DOCUMENT
        mime_type = str(msg.get("mimetype") or "")
        filename = str(msg.get("filename") or "")

        try:
            await self.provider.send_file(
                candidates[0],
                as_data_url(content, mime_type),
                filename=filename,
                caption=str(msg.get("caption") or filename),
                kind=kind.value,
            )
        except Exception as e:
            logger.warning("File send failed jid=%s kind=%s: %s", jid, kind.value, e)

        message = Message(
            id=generate_message_id("file"),
            content=content,
            timestamp=utc_now_iso(),
            direction=Direction.SENT,
            kind=kind,
            mime_type=mime_type or None,
        )
        await self.publish(jid, message)
        return message

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
