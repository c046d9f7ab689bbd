import unittest

from backend.broadcaster import Broadcaster, ws_send_json


class _FakeSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.frames = []

    async def send_json(self, payload):
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(payload)


class TestBroadcaster(unittest.IsolatedAsyncioTestCase):
    async def test_broadcast_reaches_every_viewer(self):
        b = Broadcaster()
        a, c = _FakeSocket(), _FakeSocket()
        b.register(a)
        b.register(c)
        delivered = await b.broadcast({"type": "connected"})
        self.assertEqual(delivered, 2)
        self.assertEqual(a.frames, [{"type": "connected"}])
        self.assertEqual(c.frames, [{"type": "connected"}])

    async def test_failed_viewer_is_dropped_and_others_still_receive(self):
        b = Broadcaster()
        broken, healthy = _FakeSocket(fail=True), _FakeSocket()
        b.register(broken)
        b.register(healthy)

        self.assertEqual(await b.broadcast({"type": "message", "id": "1"}), 1)
        self.assertEqual(b.viewer_count, 1)
        self.assertIsNone(b.lock_for(broken))

        await b.broadcast({"type": "message", "id": "2"})
        self.assertEqual([f["id"] for f in healthy.frames], ["1", "2"])

    async def test_register_is_idempotent(self):
        b = Broadcaster()
        ws = _FakeSocket()
        self.assertIs(b.register(ws), b.register(ws))
        b.unregister(ws)
        b.unregister(ws)
        self.assertEqual(b.viewer_count, 0)

    async def test_ws_send_json_reports_failure(self):
        self.assertFalse(await ws_send_json(_FakeSocket(fail=True), {"type": "x"}))
        self.assertTrue(await ws_send_json(_FakeSocket(), {"type": "x"}))


if __name__ == "__main__":
    unittest.main()
