"""Tests for coinsight/memory.py: bounded conversations and the LRU store."""

from __future__ import annotations

import pytest

from coinsight.memory import ConversationMemory, ConversationStore


class TestConversationMemory:
    def test_history_format_oldest_first(self):
        memory = ConversationMemory("c1")
        memory.add_message("user", "What is TVL?")
        memory.add_message("assistant", "Total value locked.")
        assert memory.get_history() == "user: What is TVL?\nassistant: Total value locked."

    def test_caps_at_ten_messages(self):
        memory = ConversationMemory("c1")
        for i in range(12):
            memory.add_message("user", f"m{i}")
        messages = memory.messages()
        assert len(memory) == 10
        assert messages[0].content == "m2"
        assert messages[-1].content == "m11"

    def test_clear(self):
        memory = ConversationMemory("c1")
        memory.add_message("user", "hi")
        memory.clear()
        assert memory.get_history() == ""

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            ConversationMemory("c1", max_messages=0)


class TestConversationStore:
    def test_generates_id_when_missing(self):
        store = ConversationStore()
        memory = store.get_or_create()
        assert memory.conversation_id
        assert memory.conversation_id in store

    def test_returns_same_conversation(self):
        store = ConversationStore()
        first = store.get_or_create("abc")
        first.add_message("user", "hi")
        assert store.get_or_create("abc") is first
        assert store.get("abc") is first

    def test_unknown_id_starts_fresh_conversation_under_that_id(self):
        store = ConversationStore()
        memory = store.get_or_create("client-id")
        assert memory.conversation_id == "client-id"
        assert len(memory) == 0

    def test_evicts_least_recently_used(self):
        store = ConversationStore(max_conversations=2)
        store.get_or_create("a")
        store.get_or_create("b")
        store.get("a")
        store.get_or_create("c")
        assert "a" in store
        assert "b" not in store
        assert len(store) == 2

    def test_delete(self):
        store = ConversationStore()
        store.get_or_create("a")
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.get("a") is None
