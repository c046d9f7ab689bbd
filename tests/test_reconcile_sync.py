import asyncio
import unittest

from backend.content_resolver import ContentResolver
from backend.models import Direction
from backend.provider import MessagingProvider, ProviderError
from backend.reconcile import ReconciliationSync


class _FakeProvider(MessagingProvider):
    def __init__(self, chats=None, messages=None, failing=()):
        self.chats = chats or []
        self.messages = messages or {}
        self.failing = set(failing)
        self.ready = True
        self.gate = None

    def is_ready(self):
        return self.ready

    async def get_all_chats(self):
        if self.gate is not None:
            await self.gate.wait()
        return list(self.chats)

    async def get_all_messages_in_chat(self, chat_id, include_me=True, include_notifications=False):
        if chat_id in self.failing:
            raise ProviderError(f"boom {chat_id}")
        return list(self.messages.get(chat_id, []))

    async def get_message_by_id(self, message_id):
        return None


class _Recorder:
    def __init__(self):
        self.published = []
        self.seen_ids = set()

    async def __call__(self, jid, message, **kwargs):
        if message.id in self.seen_ids:
            return False
        self.seen_ids.add(message.id)
        self.published.append((jid, message))
        return True


def _sent(jid, key, t, body):
    return {"id": f"true_{jid}@c.us_{key}", "fromMe": True, "from": "111@c.us", "to": f"{jid}@c.us", "t": t, "body": body}


def _received(jid, key, t, body):
    return {"id": f"false_{jid}@c.us_{key}", "fromMe": False, "from": f"{jid}@c.us", "t": t, "body": body}


class TestReconciliationSync(unittest.IsolatedAsyncioTestCase):
    def _sync(self, provider, **cfg):
        self.publish = _Recorder()
        config = {"sync_chat_limit": 20, "sync_interval_seconds": 5, "sync_enabled": True}
        config.update(cfg)
        return ReconciliationSync(provider, ContentResolver(provider), self.publish, lambda: config)

    async def test_only_new_sent_messages_are_synced(self):
        jid = "919876543210"
        provider = _FakeProvider(
            messages={
                f"{jid}@c.us": [
                    _sent(jid, "B", 200, "second message sent from the phone"),
                    _received(jid, "R", 150, "a received message in between"),
                    _sent(jid, "A", 100, "first message sent from the phone"),
                ]
            }
        )
        sync = self._sync(provider)

        self.assertEqual(await sync.sync_chat(jid), 2)
        self.assertEqual([m.id for _, m in self.publish.published], [f"true_{jid}@c.us_A", f"true_{jid}@c.us_B"])
        self.assertTrue(all(m.direction == Direction.SENT for _, m in self.publish.published))
        self.assertEqual(sync.high_water[jid], 200)

        self.assertEqual(await sync.sync_chat(jid), 0)
        self.assertEqual(len(self.publish.published), 2)

    async def test_mark_advances_past_rejected_messages(self):
        jid = "919876543210"
        provider = _FakeProvider(messages={f"{jid}@c.us": [_sent(jid, "A", 100, "already stored by the live path")]})
        sync = self._sync(provider)
        self.publish.seen_ids.add(f"true_{jid}@c.us_A")
        self.assertEqual(await sync.sync_chat(jid), 0)
        self.assertEqual(sync.high_water[jid], 100)

    async def test_not_ready_provider_syncs_nothing(self):
        provider = _FakeProvider(messages={"1@c.us": [_sent("1", "A", 1, "text that is long enough")]})
        provider.ready = False
        sync = self._sync(provider)
        self.assertEqual(await sync.sync_chat("1"), 0)

    async def test_run_once_isolates_failures_and_skips_groups(self):
        provider = _FakeProvider(
            chats=[
                {"id": {"_serialized": "111@c.us"}},
                {"id": "123-456@g.us"},
                {"id": "222@c.us"},
                {"id": "333@c.us"},
            ],
            messages={"222@c.us": [_sent("222", "X", 10, "sent from the phone to 222")]},
            failing={"111@c.us"},
        )
        sync = self._sync(provider, sync_chat_limit=3)
        summary = await sync.run_once()
        self.assertEqual(summary, {"chats": 2, "synced": 1, "errors": 1})
        self.assertEqual(self.publish.published[0][0], "222")

    async def test_overlapping_ticks_are_skipped(self):
        provider = _FakeProvider(chats=[])
        provider.gate = asyncio.Event()
        sync = self._sync(provider)

        first = asyncio.create_task(sync.tick())
        await asyncio.sleep(0)
        self.assertIsNone(await sync.tick())
        provider.gate.set()
        self.assertEqual(await first, {"chats": 0, "synced": 0, "errors": 0})

    async def test_backfill_received_inserts_bot_replies(self):
        bot = "13135550002"
        provider = _FakeProvider(
            messages={
                f"{bot}@c.us": [
                    _received(bot, "Q", 100, "full bot answer number one"),
                    _sent(bot, "S", 110, "my question"),
                    _received(bot, "Z", 120, "full bot answer number two"),
                ]
            }
        )
        sync = self._sync(provider)
        self.assertEqual(await sync.backfill_received(bot), 2)
        self.assertTrue(all(m.direction == Direction.RECEIVED for _, m in self.publish.published))
        self.assertEqual(sync.received_high_water[bot], 120)
        self.assertEqual(await sync.backfill_received(bot), 0)


if __name__ == "__main__":
    unittest.main()
