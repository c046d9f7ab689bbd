from __future__ import annotations

import asyncio
import base64
import logging
import re
from typing import Any, Optional
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

_JID_SUFFIXES = ("@c.us", "@s.whatsapp.net", "@g.us", "@lid")


class ProviderError(RuntimeError):
    pass


# ============================================
# IDENTIFIERS
# ============================================

def normalize_jid(value: Any) -> str:
    """'91999@c.us' -> '91999'. Non-strings normalize to ''."""
    if isinstance(value, dict):
        value = value.get("_serialized") or value.get("user") or ""
    if not isinstance(value, str):
        return ""
    s = value.strip()
    for suffix in _JID_SUFFIXES:
        if s.endswith(suffix):
            return s[: -len(suffix)]
    return s.split("@")[0]


def to_chat_id(jid: str) -> str:
    s = (jid or "").strip()
    if "@" in s:
        return s
    return f"{s}@c.us"


def send_jid_candidates(recipient: Any) -> list[str]:
    """
    Address forms to try, in order, for a viewer-supplied recipient.
    Empty when the recipient is not a plausible phone number.
    """
    raw = str(recipient or "")
    if "@" in raw:
        raw = raw.split("@")[0]
    digits = re.sub(r"\D", "", raw)
    if len(digits) < 10:
        return []
    digits = digits.lstrip("0")
    if not digits:
        return []
    return [f"{digits}@c.us", f"{digits}@s.whatsapp.net", f"{digits}@lid", digits]


def serialized_message_id(event: Any) -> str:
    if not isinstance(event, dict):
        return ""
    id_val = event.get("id")
    if isinstance(id_val, str):
        return id_val
    if isinstance(id_val, dict):
        if isinstance(id_val.get("_serialized"), str):
            return id_val["_serialized"]
        if isinstance(id_val.get("id"), str) and isinstance(id_val.get("remote"), str):
            from_me = "true" if id_val.get("fromMe") is True else "false"
            return f"{from_me}_{id_val['remote']}_{id_val['id']}"
    return ""


def conversation_jid_for_event(event: dict) -> str:
    if event.get("fromMe"):
        for key in ("to", "invokedBotWid", "chatId", "from"):
            jid = normalize_jid(event.get(key))
            if jid:
                return jid
        return ""
    return normalize_jid(event.get("from"))


def chat_id_of(chat: Any) -> str:
    if not isinstance(chat, dict):
        return ""
    cid = chat.get("id")
    if isinstance(cid, dict):
        cid = cid.get("_serialized") or cid.get("remote") or ""
    return cid if isinstance(cid, str) else ""


# ============================================
# PROVIDER INTERFACE
# ============================================

class MessagingProvider:
    """
    Capability surface of the messaging transport. All methods may raise
    ProviderError; callers decide how to degrade.
    """

    def is_ready(self) -> bool:
        raise NotImplementedError

    async def send_text(self, jid: str, text: str) -> Any:
        raise NotImplementedError

    async def send_file(self, jid: str, data_url: str, *, filename: str = "", caption: str = "", kind: str = "document") -> Any:
        raise NotImplementedError

    async def download_media(self, event: dict) -> bytes | str:
        raise NotImplementedError

    async def get_message_by_id(self, message_id: str) -> Optional[dict]:
        raise NotImplementedError

    async def get_all_messages_in_chat(self, chat_id: str, include_me: bool = True, include_notifications: bool = False) -> list[dict]:
        raise NotImplementedError

    async def get_all_chats(self) -> list[dict]:
        raise NotImplementedError

    async def get_all_contacts(self) -> list[dict]:
        raise NotImplementedError

    async def get_contact(self, jid: str) -> Optional[dict]:
        raise NotImplementedError

    async def get_profile_pic_from_server(self, jid: str) -> Optional[dict]:
        raise NotImplementedError

    async def delete_message(self, chat_id: str, message_id: str, *, for_everyone: bool = False) -> Any:
        raise NotImplementedError


class WPPConnectProvider(MessagingProvider):
    """
    REST adapter for a WPPConnect Server session
    (https://github.com/wppconnect-team/wppconnect-server).

    Calls are blocking `requests` calls pushed to a worker thread so they never
    stall the event loop.
    """

    def __init__(self, base_url: str, session: str, token: str = "", *, timeout_s: float = 20.0):
        self.base_url = (base_url or "").rstrip("/")
        self.session = session or "default"
        self.token = token or ""
        self.timeout_s = float(timeout_s)
        self.status: Optional[str] = None
        self._http = requests.Session()

    def is_ready(self) -> bool:
        return self.status in ("isLogged", "inChat", "CONNECTED")

    def set_status(self, status: Optional[str]) -> None:
        self.status = status

    def configure(self, *, base_url: str, session: str, token: str, timeout_s: float) -> None:
        """Apply changed connection settings; readiness is kept only for the same session."""
        if (session or "default") != self.session:
            self.status = None
        self.base_url = (base_url or "").rstrip("/")
        self.session = session or "default"
        self.token = token or ""
        self.timeout_s = float(timeout_s)

    async def check_connection(self) -> bool:
        result = await self._request("GET", "check-connection-session")
        connected = bool(result.get("status")) if isinstance(result, dict) else bool(result)
        if connected:
            self.status = "CONNECTED"
        return connected

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/{quote(self.session, safe='')}/{path.lstrip('/')}"

    def _request_sync(self, method: str, path: str, *, json_body: dict | None = None, params: dict | None = None) -> Any:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        url = self._url(path)
        logger.debug("WPPConnect %s %s", method, path)
        try:
            resp = self._http.request(method, url, json=json_body, params=params, headers=headers, timeout=self.timeout_s)
        except requests.Timeout as e:
            raise ProviderError(f"{method} {path} timed out after {self.timeout_s}s") from e
        except requests.RequestException as e:
            raise ProviderError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            raise ProviderError(f"{method} {path} returned HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            payload = resp.json()
        except ValueError:
            return resp.content

        if isinstance(payload, dict):
            status = str(payload.get("status") or "").lower()
            if status == "error":
                raise ProviderError(f"{method} {path}: {payload.get('message') or payload.get('response') or 'error'}")
            if "response" in payload:
                return payload["response"]
        return payload

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        return await asyncio.to_thread(self._request_sync, method, path, **kwargs)

    @staticmethod
    def _phone(jid: str) -> str:
        return normalize_jid(jid) or jid

    async def send_text(self, jid: str, text: str) -> Any:
        return await self._request("POST", "send-message", json_body={"phone": self._phone(jid), "message": text, "isGroup": False})

    async def send_file(self, jid: str, data_url: str, *, filename: str = "", caption: str = "", kind: str = "document") -> Any:
        if kind == "audio":
            return await self._request(
                "POST", "send-voice-base64", json_body={"phone": self._phone(jid), "base64Ptt": data_url, "isGroup": False}
            )
        if kind in ("image", "sticker"):
            path = "send-image"
        else:
            path = "send-file-base64"
        return await self._request(
            "POST",
            path,
            json_body={
                "phone": self._phone(jid),
                "base64": data_url,
                "filename": filename,
                "caption": caption,
                "isGroup": False,
            },
        )

    async def download_media(self, event: dict) -> bytes | str:
        message_id = serialized_message_id(event)
        if not message_id:
            raise ProviderError("Cannot download media without a message id")
        result = await self._request("POST", "download-media", json_body={"messageId": message_id})
        if isinstance(result, dict):
            data = result.get("base64") or result.get("data") or ""
            if not data:
                raise ProviderError(f"Empty media payload for {message_id}")
            return data
        if isinstance(result, (bytes, bytearray)):
            return bytes(result)
        if isinstance(result, str) and result:
            return result
        raise ProviderError(f"Unexpected media payload for {message_id}")

    async def get_message_by_id(self, message_id: str) -> Optional[dict]:
        result = await self._request("GET", f"message-by-id/{quote(message_id, safe='')}")
        if isinstance(result, dict) and isinstance(result.get("data"), dict):
            return result["data"]
        return result if isinstance(result, dict) else None

    async def get_all_messages_in_chat(self, chat_id: str, include_me: bool = True, include_notifications: bool = False) -> list[dict]:
        result = await self._request(
            "GET",
            f"all-messages-in-chat/{quote(self._phone(chat_id), safe='')}",
            params={
                "isGroup": "false",
                "includeMe": "true" if include_me else "false",
                "includeNotifications": "true" if include_notifications else "false",
            },
        )
        return [m for m in result if isinstance(m, dict)] if isinstance(result, list) else []

    async def get_all_chats(self) -> list[dict]:
        result = await self._request("GET", "all-chats")
        return [c for c in result if isinstance(c, dict)] if isinstance(result, list) else []

    async def get_all_contacts(self) -> list[dict]:
        result = await self._request("GET", "all-contacts")
        return [c for c in result if isinstance(c, dict)] if isinstance(result, list) else []

    async def get_contact(self, jid: str) -> Optional[dict]:
        result = await self._request("GET", f"contact/{quote(self._phone(jid), safe='')}")
        return result if isinstance(result, dict) else None

    async def get_profile_pic_from_server(self, jid: str) -> Optional[dict]:
        result = await self._request("GET", f"profile-pic/{quote(self._phone(jid), safe='')}")
        return result if isinstance(result, dict) else None

    async def delete_message(self, chat_id: str, message_id: str, *, for_everyone: bool = False) -> Any:
        return await self._request(
            "POST",
            "delete-message",
            json_body={
                "phone": self._phone(chat_id),
                "messageId": message_id,
                "onlyLocal": not for_everyone,
                "isGroup": False,
            },
        )


def media_to_base64(data: bytes | str) -> str:
    """Provider media payloads come back as raw bytes, bare base64, or data URLs."""
    if isinstance(data, (bytes, bytearray)):
        return base64.b64encode(bytes(data)).decode("ascii")
    s = str(data or "")
    if "," in s:
        return s.split(",")[-1]
    return s
