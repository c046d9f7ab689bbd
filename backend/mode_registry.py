from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from backend.models import ChatMode, coerce_mode, format_iso, parse_iso_ms
from backend.schedule import build_schedule_context

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION = "You are Ava, an AI assistant. Respond professionally, politely, and concisely."


class ModeRegistry:
    """
    Per-conversation behavior modes, the stored assistant instruction and the
    last autonomous contact time per conversation, persisted to one JSON file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._state: Optional[dict] = None

    def _default_state(self) -> dict:
        return {"chat_modes": {}, "ai_instruction": "", "last_contact": {}}

    def _load(self) -> dict:
        state = self._default_state()
        try:
            if self.path.is_file():
                data = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    modes = data.get("chat_modes", data.get("chatModes"))
                    if isinstance(modes, dict):
                        state["chat_modes"] = {str(k): coerce_mode(v).value for k, v in modes.items()}
                    instruction = data.get("ai_instruction", data.get("aiInstruction"))
                    if isinstance(instruction, str):
                        state["ai_instruction"] = instruction
                    last_contact = data.get("last_contact", data.get("lastChatTime"))
                    if isinstance(last_contact, dict):
                        state["last_contact"] = {str(k): str(v) for k, v in last_contact.items() if v}
        except Exception:
            logger.exception("Failed to load mode registry %s", self.path)
            return self._default_state()
        return state

    def _data(self) -> dict:
        if self._state is None:
            self._state = self._load()
        return self._state

    def _flush(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(self._data(), indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
        except Exception:
            logger.exception("Failed to write mode registry %s", self.path)

    # Modes

    def get_mode(self, jid: str) -> ChatMode:
        return coerce_mode(self._data()["chat_modes"].get(jid))

    def set_mode(self, jid: str, mode: ChatMode | str) -> ChatMode:
        resolved = coerce_mode(mode)
        self._data()["chat_modes"][jid] = resolved.value
        self._flush()
        logger.info("Chat mode set jid=%s mode=%s", jid, resolved.value)
        return resolved

    def all_modes(self) -> dict[str, str]:
        return dict(self._data()["chat_modes"])

    # Assistant instruction

    def get_stored_instruction(self) -> str:
        return str(self._data().get("ai_instruction") or "")

    def set_instruction(self, instruction: str) -> None:
        self._data()["ai_instruction"] = str(instruction or "")
        self._flush()

    def build_instruction(self, training_text: str = "", schedule_text: str = "", now: datetime | None = None) -> str:
        """
        Base instruction (training text, else the stored instruction, else the
        default persona) plus the schedule clause for `now`.
        """
        base = (training_text or "").strip() or self.get_stored_instruction().strip() or DEFAULT_INSTRUCTION
        return base + build_schedule_context(schedule_text, now or datetime.now())

    # Last contact

    def get_last_contact_ms(self, jid: str) -> Optional[float]:
        return parse_iso_ms(self._data()["last_contact"].get(jid))

    def touch_last_contact(self, jid: str, when: datetime) -> None:
        self._data()["last_contact"][jid] = format_iso(when)
        self._flush()
