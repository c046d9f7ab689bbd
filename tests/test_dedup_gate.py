import unittest

from backend.dedup import find_duplicate, is_duplicate
from backend.models import Direction, Message, MessageKind


def _msg(msg_id, content, ts, direction=Direction.SENT, kind=MessageKind.CHAT):
    return Message(id=msg_id, content=content, timestamp=ts, direction=direction, kind=kind)


class TestDeduplicationGate(unittest.TestCase):
    def test_same_id_is_duplicate_regardless_of_content(self):
        stored = [_msg("true_1@c.us_ABC", "hello", "2024-01-01T10:00:00.000Z")]
        candidate = _msg("true_1@c.us_ABC", "something else", "2024-01-01T12:00:00.000Z")
        self.assertIs(find_duplicate(stored, candidate), stored[0])

    def test_echo_within_window_is_duplicate(self):
        stored = [_msg("msg_1", "On my way", "2024-01-01T10:00:00.000Z")]
        echo = _msg("true_1@c.us_XYZ", "  On my way ", "2024-01-01T10:00:05.000Z")
        self.assertTrue(is_duplicate(stored, echo))

    def test_window_boundary(self):
        stored = [_msg("msg_1", "ok", "2024-01-01T10:00:00.000Z")]
        self.assertTrue(is_duplicate(stored, _msg("m2", "ok", "2024-01-01T10:00:08.000Z")))
        self.assertFalse(is_duplicate(stored, _msg("m3", "ok", "2024-01-01T10:00:08.001Z")))

    def test_direction_and_kind_must_match(self):
        stored = [_msg("msg_1", "ok", "2024-01-01T10:00:00.000Z")]
        self.assertFalse(is_duplicate(stored, _msg("m2", "ok", "2024-01-01T10:00:01.000Z", direction=Direction.RECEIVED)))
        self.assertFalse(is_duplicate(stored, _msg("m3", "ok", "2024-01-01T10:00:01.000Z", kind=MessageKind.DOCUMENT)))

    def test_empty_content_only_matches_by_id(self):
        stored = [_msg("msg_1", "", "2024-01-01T10:00:00.000Z")]
        self.assertFalse(is_duplicate(stored, _msg("m2", "", "2024-01-01T10:00:00.000Z")))

    def test_unparseable_timestamp_only_matches_by_id(self):
        stored = [_msg("msg_1", "hi", "not-a-date")]
        self.assertFalse(is_duplicate(stored, _msg("m2", "hi", "2024-01-01T10:00:00.000Z")))
        self.assertFalse(is_duplicate([_msg("msg_1", "hi", "2024-01-01T10:00:00.000Z")], _msg("m2", "hi", "garbage")))


if __name__ == "__main__":
    unittest.main()
