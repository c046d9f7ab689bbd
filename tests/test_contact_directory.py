import unittest

from backend.contacts import (
    ContactCache,
    ContactDirectory,
    avatar_url,
    estimate_sync_seconds,
    is_group_jid,
)
from backend.provider import MessagingProvider, ProviderError


class _FakeProvider(MessagingProvider):
    def __init__(self, *, ready=True, contacts=None, chats=None, contacts_error=None):
        self.ready = ready
        self.contacts = contacts or []
        self.chats = chats or []
        self.contacts_error = contacts_error
        self.contact_lookups = []

    def is_ready(self):
        return self.ready

    async def get_all_contacts(self):
        if self.contacts_error is not None:
            raise self.contacts_error
        return list(self.contacts)

    async def get_all_chats(self):
        return list(self.chats)

    async def get_contact(self, jid):
        self.contact_lookups.append(jid)
        return {"pushname": "Priya"}

    async def get_profile_pic_from_server(self, jid):
        return {"eurl": f"https://pics.example/{jid}.jpg"}


class _FakeStore:
    def __init__(self):
        self.created = []

    def ensure_conversation(self, jid):
        self.created.append(jid)
        return True


class TestContactDirectory(unittest.IsolatedAsyncioTestCase):
    async def test_details_are_cached(self):
        provider = _FakeProvider()
        directory = ContactDirectory(provider, ContactCache())
        first = await directory.details("919876543210")
        second = await directory.details("919876543210")
        self.assertEqual(first.name, "Priya")
        self.assertEqual(first.profilePicUrl, "https://pics.example/919876543210@c.us.jpg")
        self.assertEqual(second, first)
        self.assertEqual(provider.contact_lookups, ["919876543210@c.us"])

    async def test_not_ready_falls_back_to_generated_avatar(self):
        directory = ContactDirectory(_FakeProvider(ready=False), ContactCache())
        entry = await directory.details("919876543210")
        self.assertEqual(entry.name, "919876543210")
        self.assertEqual(entry.profilePicUrl, avatar_url("919876543210"))

    async def test_group_names_from_metadata(self):
        provider = _FakeProvider(chats=[{"id": {"_serialized": "120363-99@g.us"}, "name": "Family"}])
        directory = ContactDirectory(provider, ContactCache())
        self.assertEqual(await directory.load_group_metadata(), 1)
        entry = await directory.details("120363-99")
        self.assertEqual(entry.name, "Family")
        self.assertIn("ui-avatars.com", entry.profilePicUrl)

    async def test_collect_valid_contacts_filters_and_falls_back_to_chats(self):
        provider = _FakeProvider(
            contacts_error=ProviderError("unsupported"),
            chats=[
                {"id": "919876543210@c.us", "name": "Asha"},
                {"id": "919876543210@c.us", "name": "Asha again"},
                {"id": "12345@c.us", "name": "Short"},
                {"id": "120363-1@g.us", "name": "Group"},
            ],
        )
        directory = ContactDirectory(provider, ContactCache())
        valid = await directory.collect_valid_contacts()
        self.assertEqual([c["number"] for c in valid], ["919876543210"])

    async def test_sync_contacts_creates_conversations_and_resets_progress(self):
        provider = _FakeProvider(contacts=[{"id": "919876543210@c.us", "name": "Asha"}, {"id": "14155550100@c.us"}])
        cache = ContactCache()
        directory = ContactDirectory(provider, cache)
        store = _FakeStore()

        synced = await directory.sync_contacts(store)
        self.assertEqual([c.name for c in synced], ["Asha", "Priya"])
        self.assertEqual(store.created, ["919876543210", "14155550100"])
        self.assertEqual(len(cache), 2)
        self.assertFalse(directory.progress.isRunning)
        self.assertEqual(directory.progress.processed, 0)


class TestContactHelpers(unittest.TestCase):
    def test_group_detection(self):
        self.assertTrue(is_group_jid("120363-99@g.us"))
        self.assertTrue(is_group_jid("120363999"))
        self.assertFalse(is_group_jid("919876543210"))

    def test_sync_estimate(self):
        self.assertEqual(estimate_sync_seconds(0), 0)
        self.assertEqual(estimate_sync_seconds(45), 4)


if __name__ == "__main__":
    unittest.main()
