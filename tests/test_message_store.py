"""Tests for ordered message storage and id remapping."""

from __future__ import annotations

import unittest

from buildchat.message_store import MessageStore
from buildchat.models import ConversationDetail, Message


class MessageStoreTests(unittest.TestCase):
    """Validate in-flight message mutation helpers."""

    def test_append_content_clears_loading_and_status(self) -> None:
        store = MessageStore(
            [Message(id="a1", role="assistant", loading=True, status_text="Thinking...")]
        )
        self.assertTrue(store.append_content("a1", "he"))
        self.assertTrue(store.append_content("a1", "llo"))
        message = store.get("a1")
        self.assertEqual(message.content, "hello")
        self.assertFalse(message.loading)
        self.assertIsNone(message.status_text)

    def test_append_thinking_keeps_status(self) -> None:
        store = MessageStore(
            [Message(id="a1", role="assistant", loading=True, status_text="Thinking...")]
        )
        store.append_thinking("a1", "hmm")
        message = store.get("a1")
        self.assertEqual(message.thinking, "hmm")
        self.assertEqual(message.content, "")
        self.assertEqual(message.status_text, "Thinking...")

    def test_remap_id_moves_message(self) -> None:
        store = MessageStore([Message(id="tmp", role="assistant")])
        self.assertTrue(store.remap_id("tmp", "m1"))
        self.assertIsNone(store.get("tmp"))
        self.assertIsNotNone(store.get("m1"))
        self.assertFalse(store.remap_id("missing", "m2"))

    def test_unknown_id_updates_are_noops(self) -> None:
        store = MessageStore()
        self.assertFalse(store.append_content("nope", "x"))
        self.assertFalse(store.update("nope", loading=False))
        self.assertFalse(store.remove("nope"))

    def test_snapshot_returns_copies(self) -> None:
        store = MessageStore([Message(id="u1", role="user", content="hi")])
        snapshot = store.snapshot()
        snapshot[0].content = "changed"
        self.assertEqual(store.get("u1").content, "hi")

    def test_replace_from_detail_assigns_stable_ids(self) -> None:
        store = MessageStore([Message(id="old", role="user")])
        detail = ConversationDetail.model_validate(
            {
                "conversation_id": "c1",
                "messages": [
                    {"role": "user", "content": "q", "timestamp": 10},
                    {"role": "assistant", "content": "a", "timestamp": 10},
                ],
            }
        )
        store.replace_from_detail(detail)
        self.assertEqual([m.id for m in store.snapshot()], ["c1-10-0", "c1-10-1"])
        self.assertEqual(len(store), 2)


if __name__ == "__main__":
    unittest.main()
