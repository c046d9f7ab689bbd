import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from backend.broadcaster import Broadcaster
from backend.contacts import ContactCache, ContactDirectory
from backend.content_resolver import ContentResolver
from backend.dispatcher import Dispatcher, build_intro, time_of_day_greeting, with_intro
from backend.mode_registry import ModeRegistry
from backend.models import ChatMode, Direction
from backend.provider import MessagingProvider
from backend.transcript_store import TranscriptStore

PHONE = "919876543210"


class _FakeProvider(MessagingProvider):
    def __init__(self):
        self.sent = []
        self.files = []

    def is_ready(self):
        return False

    async def send_text(self, jid, text):
        self.sent.append((jid, text))
        return {"id": "sent"}

    async def send_file(self, jid, data_url, *, filename="", caption="", kind="document"):
        self.files.append((jid, data_url, filename, kind))

    async def get_message_by_id(self, message_id):
        return None

    async def get_all_messages_in_chat(self, chat_id, include_me=True, include_notifications=False):
        return []


class _FakeLLM:
    def __init__(self, reply="", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def complete(self, user_text, system_instruction, **kwargs):
        self.calls.append((user_text, system_instruction))
        if self.error is not None:
            raise self.error
        return self.reply


class _FakeSocket:
    def __init__(self):
        self.frames = []

    async def send_json(self, payload):
        self.frames.append(payload)


class _DispatcherTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.provider = _FakeProvider()
        self.store = TranscriptStore(root / "chats.json")
        self.registry = ModeRegistry(root / "state.json")
        self.broadcaster = Broadcaster()
        self.viewer = _FakeSocket()
        self.broadcaster.register(self.viewer)
        self.llm = _FakeLLM()
        self.config = {
            "ai_training": "",
            "ai_schedule": "",
            "assistant_name": "Ava",
            "owner_name": "",
            "intro_gap_hours": 3.0,
            "reply_max_words": 25,
        }
        self.dispatcher = Dispatcher(
            store=self.store,
            registry=self.registry,
            resolver=ContentResolver(self.provider),
            directory=ContactDirectory(self.provider, ContactCache()),
            broadcaster=self.broadcaster,
            provider=self.provider,
            llm_getter=lambda: self.llm,
            config_getter=lambda: self.config,
        )

    async def asyncTearDown(self):
        await self.dispatcher.shutdown()

    def tearDown(self):
        self._tmp.cleanup()

    def _inbound(self, msg_id, body):
        return {"id": f"false_{PHONE}@c.us_{msg_id}", "from": f"{PHONE}@c.us", "body": body, "t": int(time.time())}


class TestOutboundModes(_DispatcherTestCase):
    async def test_manual_send_stores_and_sends_original(self):
        stored = await self.dispatcher.send_text(PHONE, "see you at 5", client_id="c1")
        self.assertEqual([m.id for m in stored], ["c1"])
        self.assertFalse(stored[0].is_assisted_original)
        self.assertEqual(self.provider.sent, [(f"{PHONE}@c.us", "see you at 5")])
        self.assertEqual(len(self.viewer.frames), 1)
        self.assertEqual(self.viewer.frames[0]["direction"], "sent")
        self.assertEqual(self.llm.calls, [])

    async def test_assisted_send_keeps_original_and_rewrite(self):
        self.registry.set_mode(PHONE, ChatMode.ASSISTED)
        self.llm.reply = "I am fine."
        stored = await self.dispatcher.send_text(PHONE, "mai theek hu", client_id="c1")

        self.assertEqual(len(stored), 2)
        original, rewrite = stored
        self.assertTrue(original.is_assisted_original)
        self.assertEqual(original.content, "mai theek hu")
        self.assertTrue(rewrite.is_assisted_rewrite)
        self.assertTrue(rewrite.id.startswith("ai_rewrite_"))
        self.assertEqual(self.provider.sent, [(f"{PHONE}@c.us", "I am fine.")])
        self.assertEqual([f.get("isOriginalInSemiAI") for f in self.viewer.frames], [True, None])
        self.assertTrue(self.viewer.frames[1]["isAIRewrite"])
        self.assertEqual([m.id for m in self.store.get_messages(PHONE)], ["c1", rewrite.id])

    async def test_assisted_send_with_failed_rewrite_sends_original(self):
        self.registry.set_mode(PHONE, ChatMode.ASSISTED)
        self.llm.error = RuntimeError("timed out")
        stored = await self.dispatcher.send_text(PHONE, "hello there", client_id="c1")
        self.assertEqual(len(stored), 1)
        self.assertEqual(self.provider.sent, [(f"{PHONE}@c.us", "hello there")])

    async def test_preview_flag_skips_rewrite(self):
        self.registry.set_mode(PHONE, ChatMode.ASSISTED)
        self.llm.reply = "Hello there."
        await self.dispatcher.send_text(PHONE, "hello there", skip_rewrite=True)
        self.assertEqual(self.llm.calls, [])
        self.assertEqual(self.provider.sent, [(f"{PHONE}@c.us", "hello there")])

    async def test_blank_text_is_rejected(self):
        self.assertIsNone(await self.dispatcher.send_text(PHONE, "   "))
        self.assertEqual(self.provider.sent, [])
        self.assertEqual(self.store.get_messages(PHONE), [])
        self.assertEqual(self.viewer.frames, [])

    async def test_rewrite_matching_original_is_not_reported_twice(self):
        self.registry.set_mode(PHONE, ChatMode.ASSISTED)
        self.llm.reply = "hello there"
        stored = await self.dispatcher.send_text(PHONE, "hello there ", client_id="c1")

        self.assertEqual([m.id for m in stored], ["c1"])
        self.assertEqual([m.id for m in self.store.get_messages(PHONE)], ["c1"])
        self.assertEqual(len(self.viewer.frames), 1)
        self.assertEqual(self.provider.sent, [(f"{PHONE}@c.us", "hello there")])

    async def test_invalid_recipient_is_rejected(self):
        self.assertIsNone(await self.dispatcher.send_text("12345", "hi"))
        self.assertEqual(self.provider.sent, [])
        self.assertEqual(self.viewer.frames, [])

    async def test_send_file_records_media_message(self):
        message = await self.dispatcher.send_file(
            {"to": PHONE, "content": "iVBORw==", "mimetype": "image/png", "subType": "image", "filename": "a.png"}
        )
        self.assertEqual(message.kind.value, "image")
        self.assertEqual(self.provider.files[0][1], "data:image/png;base64,iVBORw==")
        self.assertEqual(self.viewer.frames[0]["subType"], "image")


class TestInboundModes(_DispatcherTestCase):
    async def test_inbound_message_is_stored_and_broadcast_once(self):
        event = self._inbound("A", "Are we still meeting tomorrow morning?")
        await self.dispatcher.handle_provider_event(event)
        await self.dispatcher.handle_provider_event(event)

        msgs = self.store.get_messages(PHONE)
        self.assertEqual(len(msgs), 1)
        self.assertEqual(msgs[0].direction, Direction.RECEIVED)
        self.assertEqual(len(self.viewer.frames), 1)
        frame = self.viewer.frames[0]
        self.assertEqual(frame["type"], "message")
        self.assertEqual(frame["from"], PHONE)
        self.assertEqual(frame["contactName"], PHONE)
        self.assertEqual(self.provider.sent, [])

    async def test_autonomous_reply_introduces_only_after_gap(self):
        self.registry.set_mode(PHONE, ChatMode.AUTONOMOUS)
        self.llm.reply = "Sure, I will let them know."

        await self.dispatcher.handle_provider_event(self._inbound("A", "Can you tell him I called this morning?"))
        self.assertEqual(len(self.provider.sent), 1)
        target, first_reply = self.provider.sent[0]
        self.assertEqual(target, f"{PHONE}@c.us")
        self.assertIn("This is Ava, Personal Assistant.", first_reply)
        self.assertTrue(first_reply.endswith("Sure, I will let them know."))
        self.assertIsNotNone(self.registry.get_last_contact_ms(PHONE))

        self.llm.reply = "He will call you back soon."
        await self.dispatcher.handle_provider_event(self._inbound("B", "Also ask him about the invoice please."))
        self.assertEqual(self.provider.sent[1][1], "He will call you back soon.")

        directions = [m.direction for m in self.store.get_messages(PHONE)]
        self.assertEqual(directions, [Direction.RECEIVED, Direction.SENT, Direction.RECEIVED, Direction.SENT])

    async def test_autonomous_llm_failure_sends_nothing(self):
        self.registry.set_mode(PHONE, ChatMode.AUTONOMOUS)
        self.llm.error = RuntimeError("All configured LLM APIs failed.")
        await self.dispatcher.handle_provider_event(self._inbound("A", "Is the report ready for review yet?"))
        self.assertEqual(self.provider.sent, [])
        self.assertEqual(len(self.store.get_messages(PHONE)), 1)

    async def test_autonomous_reply_is_capped(self):
        self.registry.set_mode(PHONE, ChatMode.AUTONOMOUS)
        self.registry.set_instruction("Answer as Ava.")
        self.llm.reply = " ".join(["word"] * 40)
        await self.dispatcher.handle_provider_event(self._inbound("A", "Tell me everything about the plan."))
        reply = self.provider.sent[0][1]
        self.assertTrue(reply.endswith("word..."))
        self.assertEqual(self.llm.calls[0][1], "Answer as Ava.")

    async def test_own_message_is_not_answered(self):
        self.registry.set_mode(PHONE, ChatMode.AUTONOMOUS)
        self.llm.reply = "should not be used"
        event = {
            "id": f"true_{PHONE}@c.us_S",
            "from": "111@c.us",
            "to": f"{PHONE}@c.us",
            "fromMe": True,
            "body": "I sent this from my phone earlier.",
            "t": int(time.time()),
        }
        await self.dispatcher.handle_provider_event(event)
        msgs = self.store.get_messages(PHONE)
        self.assertEqual(msgs[0].direction, Direction.SENT)
        self.assertEqual(self.provider.sent, [])

    async def test_assisted_inbound_is_stored_without_reply(self):
        self.registry.set_mode(PHONE, ChatMode.ASSISTED)
        self.llm.reply = "should not be used"
        await self.dispatcher.handle_provider_event(self._inbound("A", "mai theek hu, tum kaise ho yaar?"))

        msgs = self.store.get_messages(PHONE)
        self.assertEqual(
            [(m.content, m.direction, m.kind.value) for m in msgs],
            [("mai theek hu, tum kaise ho yaar?", Direction.RECEIVED, "chat")],
        )
        self.assertEqual(self.llm.calls, [])
        self.assertEqual(self.provider.sent, [])

    async def test_intro_depends_on_gap_since_last_contact(self):
        self.registry.set_mode(PHONE, ChatMode.AUTONOMOUS)
        self.llm.reply = "He is out right now."
        now = datetime.now(timezone.utc)

        self.registry.touch_last_contact(PHONE, now - timedelta(hours=3, minutes=1))
        await self.dispatcher.handle_provider_event(self._inbound("A", "Is he around at the office today?"))
        stale_reply = self.provider.sent[0][1]
        self.assertIn("This is Ava, Personal Assistant.", stale_reply)
        self.assertTrue(stale_reply.endswith("He is out right now."))

        self.registry.touch_last_contact(PHONE, now - timedelta(hours=2, minutes=59))
        await self.dispatcher.handle_provider_event(self._inbound("B", "Can you check again in a bit please?"))
        self.assertEqual(self.provider.sent[1][1], "He is out right now.")


class TestIntro(unittest.TestCase):
    def test_greeting_by_hour(self):
        self.assertEqual(time_of_day_greeting(9), "Good morning")
        self.assertEqual(time_of_day_greeting(12), "Good afternoon")
        self.assertEqual(time_of_day_greeting(17), "Good evening")

    def test_intro_with_owner(self):
        self.assertEqual(build_intro(20, "Ava", "Sam"), "Good evening. This is Ava, Personal Assistant to Sam. ")

    def test_existing_intro_is_not_repeated(self):
        reply = "Good morning, this is Ava. He is out."
        self.assertEqual(with_intro(reply, "Good morning. This is Ava, Personal Assistant. ", "Ava"), reply)


if __name__ == "__main__":
    unittest.main()
