from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, asdict, field
from typing import Optional
from urllib.parse import quote

from backend.provider import MessagingProvider, chat_id_of, normalize_jid

logger = logging.getLogger(__name__)

CONTACT_SYNC_BATCH = 20
CONTACT_SYNC_SECONDS_PER_BATCH = 1.5

_DIGITS_RE = re.compile(r"^\d+$")


def avatar_url(seed: str) -> str:
    return f"https://api.dicebear.com/7.x/pixel-art/svg?seed={quote(seed or '', safe='')}"


def group_avatar_url(seed: str) -> str:
    return (
        f"https://ui-avatars.com/api/?name={quote(seed or '', safe='')}"
        "&background=random&color=fff&size=128&bold=true"
    )


def is_group_jid(jid: str) -> bool:
    s = jid or ""
    return "@g.us" in s or "-" in s or s.startswith("12036")


def profile_pic_url(result: Optional[dict]) -> Optional[str]:
    if not isinstance(result, dict):
        return None
    url = result.get("eurl") or result.get("imgFull")
    return url if isinstance(url, str) and url else None


def estimate_sync_seconds(contact_count: int) -> int:
    return math.ceil(contact_count / CONTACT_SYNC_BATCH * CONTACT_SYNC_SECONDS_PER_BATCH)


@dataclass
class ContactEntry:
    name: str
    profilePicUrl: str

    def to_dict(self) -> dict:
        return asdict(self)


class ContactCache:
    """In-memory contact details keyed by normalized jid. No eviction."""

    def __init__(self):
        self._entries: dict[str, ContactEntry] = {}

    def lookup(self, jid: str) -> Optional[ContactEntry]:
        return self._entries.get(jid)

    def put(self, jid: str, entry: ContactEntry) -> None:
        self._entries[jid] = entry

    def to_dict(self) -> dict:
        return {jid: entry.to_dict() for jid, entry in self._entries.items()}

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class SyncProgress:
    isRunning: bool = False
    processed: int = 0
    total: int = 0

    def reset(self) -> None:
        self.isRunning = False
        self.processed = 0
        self.total = 0


@dataclass
class SyncedContact:
    id: str
    number: str
    name: str
    profilePicUrl: str
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {"id": self.id, "number": self.number, "name": self.name, "profilePicUrl": self.profilePicUrl}
        data.update(self.extra)
        return data


class ContactDirectory:
    """Resolves display identity (name + avatar) for conversations."""

    def __init__(self, provider: MessagingProvider, cache: ContactCache):
        self.provider = provider
        self.cache = cache
        self.group_names: dict[str, str] = {}
        self.progress = SyncProgress()

    def fallback(self, jid: str) -> ContactEntry:
        return ContactEntry(name=jid, profilePicUrl=avatar_url(jid))

    async def load_group_metadata(self) -> int:
        if not self.provider.is_ready():
            return 0
        try:
            chats = await self.provider.get_all_chats()
        except Exception as e:
            logger.warning("Group metadata load failed: %s", e)
            return 0
        for chat in chats:
            cid = chat_id_of(chat)
            if "@g.us" in cid and chat.get("name"):
                self.group_names[normalize_jid(cid)] = str(chat["name"])
        return len(self.group_names)

    async def details(self, jid: str) -> ContactEntry:
        if not jid or jid == "status":
            return ContactEntry(name="Unknown", profilePicUrl=avatar_url("unknown"))

        group = is_group_jid(jid)
        if group and jid in self.group_names:
            return ContactEntry(name=self.group_names[jid], profilePicUrl=group_avatar_url(jid))

        if not group:
            cached = self.cache.lookup(jid)
            if cached is not None:
                return cached

        if not self.provider.is_ready():
            return self.fallback(jid)

        try:
            if group:
                full_jid = jid if "@g.us" in jid else f"{jid}@g.us"
                name = jid
            else:
                full_jid = jid if "@" in jid else f"{jid}@c.us"
                contact = await self.provider.get_contact(full_jid)
                name = (contact or {}).get("pushname") or (contact or {}).get("name") or jid

            pic = avatar_url(jid)
            try:
                pic = profile_pic_url(await self.provider.get_profile_pic_from_server(full_jid)) or pic
            except Exception as e:
                logger.debug("Profile picture lookup failed for %s: %s", jid, e)

            entry = ContactEntry(name=str(name), profilePicUrl=pic)
            self.cache.put(jid, entry)
            return entry
        except Exception as e:
            logger.warning("Contact lookup failed for %s: %s", jid, e)
            return self.fallback(jid)

    # ------------------------------------------------------------------
    # Bulk contact sync
    # ------------------------------------------------------------------

    async def _raw_contacts(self) -> list[dict]:
        try:
            return await self.provider.get_all_contacts()
        except Exception as e:
            logger.info("getAllContacts failed, falling back to chats: %s", e)
        chats = await self.provider.get_all_chats()
        return [
            {"id": chat_id_of(c), "name": c.get("name") or c.get("formattedTitle")}
            for c in chats
            if chat_id_of(c) and "@g.us" not in chat_id_of(c)
        ]

    async def collect_valid_contacts(self) -> list[dict]:
        """Unique individual contacts with a plausible (10+ digit) phone number."""
        seen: set[str] = set()
        valid: list[dict] = []
        for raw in await self._raw_contacts():
            cid = raw.get("id")
            if isinstance(cid, dict):
                cid = cid.get("_serialized")
            if not isinstance(cid, str) or not cid:
                continue
            number = cid.replace("@c.us", "").replace("@s.whatsapp.net", "")
            if not _DIGITS_RE.match(number) or len(number) < 10 or number in seen:
                continue
            seen.add(number)
            valid.append({**raw, "id": cid, "number": number})
        return valid

    async def sync_contacts(self, store) -> list[SyncedContact]:
        """Populate the cache and create an empty conversation per contact."""
        self.progress.isRunning = True
        self.progress.processed = 0
        try:
            contacts = await self.collect_valid_contacts()
            self.progress.total = len(contacts)
            synced: list[SyncedContact] = []
            for raw in contacts:
                number = raw["number"]
                full_jid = f"{number}@c.us"
                name = raw.get("name") or raw.get("pushname") or ""
                extra: dict = {}
                if not name or name == number:
                    try:
                        detail = await self.provider.get_contact(full_jid) or {}
                        name = detail.get("pushname") or detail.get("name") or name
                        extra = {
                            "verifiedName": detail.get("verifiedName"),
                            "isBusiness": bool(detail.get("isBusiness")),
                            "isMyContact": bool(detail.get("isMyContact")),
                        }
                    except Exception as e:
                        logger.debug("Contact detail lookup failed for %s: %s", number, e)
                pic = avatar_url(number)
                try:
                    pic = profile_pic_url(await self.provider.get_profile_pic_from_server(full_jid)) or pic
                except Exception as e:
                    logger.debug("Profile picture lookup failed for %s: %s", number, e)

                contact = SyncedContact(id=full_jid, number=number, name=name or number, profilePicUrl=pic, extra=extra)
                self.cache.put(number, ContactEntry(name=contact.name, profilePicUrl=pic))
                store.ensure_conversation(number)
                synced.append(contact)
                self.progress.processed += 1
            return synced
        finally:
            self.progress.reset()
