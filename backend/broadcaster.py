from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)


async def ws_send_json(websocket: Any, payload: dict, send_lock: asyncio.Lock | None = None) -> bool:
    try:
        if send_lock is None:
            await websocket.send_json(payload)
        else:
            async with send_lock:
                await websocket.send_json(payload)
        return True
    except Exception as e:
        logger.debug("WebSocket send failed: %s", e)
        return False


class Broadcaster:
    """
    Live-viewer fan-out. Each registered socket has its own send lock so
    concurrent broadcasts never interleave frames on one connection.
    """

    def __init__(self):
        self._viewers: dict[Any, asyncio.Lock] = {}

    def register(self, websocket: Any) -> asyncio.Lock:
        lock = self._viewers.get(websocket)
        if lock is None:
            lock = asyncio.Lock()
            self._viewers[websocket] = lock
        return lock

    def unregister(self, websocket: Any) -> None:
        self._viewers.pop(websocket, None)

    def lock_for(self, websocket: Any) -> asyncio.Lock | None:
        return self._viewers.get(websocket)

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    async def broadcast(self, payload: dict) -> int:
        """Send `payload` to every viewer in turn; returns how many received it."""
        delivered = 0
        for websocket, lock in list(self._viewers.items()):
            if await ws_send_json(websocket, payload, lock):
                delivered += 1
            else:
                self.unregister(websocket)
                logger.info("Dropped live viewer after failed send (remaining=%d)", len(self._viewers))
        return delivered
