import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

os.environ.setdefault("WA_ASSISTANT_DATA_DIR", tempfile.mkdtemp(prefix="wa-assistant-test-"))

from fastapi.testclient import TestClient

import main
from backend.models import Direction, Message


class TestApiRoutes(unittest.TestCase):
    def setUp(self):
        self._orig_config = dict(main.config)
        self.client = TestClient(main.app)

    def tearDown(self):
        main.config = self._orig_config
        main._apply_provider_settings(main.config)

    def test_mode_round_trip_and_validation(self):
        resp = self.client.post("/api/mode/919876543210", json={"mode": "assisted"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get("/api/mode/919876543210").json()["mode"], "assisted")

        bad = self.client.post("/api/mode/919876543210", json={"mode": "semi"})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["status"], "error")

    def test_delete_message_falls_back_to_partial_match(self):
        main.transcript_store.accept(
            "14155550100",
            Message(id="msg_123_abc", content="hi", timestamp="2024-01-01T10:00:00.000Z", direction=Direction.SENT),
        )
        missing = self.client.delete("/api/delete-message/14155550100/msg_999_zzz")
        self.assertEqual(missing.status_code, 404)
        resp = self.client.delete("/api/delete-message/14155550100/msg_456_abc")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(main.transcript_store.get_messages("14155550100"), [])

    def test_chats_listing_shape(self):
        main.transcript_store.accept(
            "14155550111",
            Message(id="r1", content="hello", timestamp="2030-01-01T10:00:00.000Z", direction=Direction.RECEIVED),
        )
        data = self.client.get("/api/chats", params={"page": 1, "limit": 1}).json()
        self.assertEqual(data["pagination"]["currentPage"], 1)
        chat = data["chats"]["14155550111"]
        self.assertEqual(chat["messages"][0]["subType"], "chat")
        self.assertEqual(chat["contact"]["name"], "14155550111")

    def test_ai_suggest_requires_message_and_llm(self):
        self.assertEqual(self.client.post("/api/ai-suggest", json={"message": ""}).status_code, 400)
        with patch.object(main, "llm_client", None):
            self.assertEqual(self.client.post("/api/ai-suggest", json={"message": "hi"}).status_code, 503)

    def test_sync_routes_require_ready_provider(self):
        with patch.object(main.provider, "status", None):
            self.assertEqual(self.client.post("/api/sync-sent-messages").status_code, 503)
            self.assertEqual(self.client.post("/api/sync-contacts").status_code, 503)
        progress = self.client.get("/api/sync-progress").json()
        self.assertEqual(progress, {"isRunning": False, "processed": 0, "total": 0})

    def test_webhook_status_marks_provider_ready(self):
        with patch.object(main.contact_directory, "load_group_metadata", MagicMock(return_value=None)):
            with patch.object(main.dispatcher, "spawn") as spawn:
                resp = self.client.post("/api/webhook", json={"event": "status-find", "status": "inChat"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(main.provider.is_ready())
        spawn.assert_called_once_with(None)
        main.provider.set_status(None)

    def test_webhook_message_event_reaches_pipeline(self):
        event = {
            "event": "onmessage",
            "id": "false_919876543210@c.us_3EB0",
            "from": "919876543210@c.us",
            "body": "Are you free later today?",
            "t": 1704103200,
        }
        handle = MagicMock(return_value="ingest-task")
        with patch.object(main.dispatcher, "handle_provider_event", handle):
            with patch.object(main.dispatcher, "spawn") as spawn:
                resp = self.client.post("/api/webhook", json=event)
        self.assertEqual(resp.status_code, 200)
        handle.assert_called_once_with(event)
        spawn.assert_called_once_with("ingest-task")

    def test_viewer_blank_send_is_rejected(self):
        with patch.object(main.provider, "status", "inChat"):
            with patch.object(main.dispatcher, "send_text") as send_text:
                with self.client.websocket_connect("/ws") as ws:
                    self.assertEqual(ws.receive_json(), {"type": "connected"})
                    ws.send_json({"type": "send", "to": "919876543210", "message": "   "})
                    reply = ws.receive_json()
        self.assertEqual(reply["type"], "error")
        self.assertIn("empty", reply["message"])
        send_text.assert_not_called()

    def test_settings_round_trip(self):
        resp = self.client.post("/api/settings", json={"assistant_name": "Maya", "sync_interval_seconds": "10"})
        self.assertEqual(resp.status_code, 200)
        cfg = self.client.get("/api/settings").json()["config"]
        self.assertEqual(cfg["assistant_name"], "Maya")
        self.assertEqual(cfg["sync_interval_seconds"], 10.0)


if __name__ == "__main__":
    unittest.main()
