"""
Tests for Chat Memory Module

Tests for MemoryStore (similarity-ordered memory) and TurnLog, the single
writer behind the message log and the memory store.
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from config.settings import DatabaseConfig, MemoryConfig, RetrievalConfig
from botforge.conversations import ConversationStore
from botforge.database import DatabaseClients
from botforge.memory import MemoryEntry, MemoryStore, TurnLog
from botforge.models import BotConfig


@pytest.fixture
def memory_store(clients, embedder):
    return MemoryStore(
        clients,
        embedder,
        config=DatabaseConfig(provider="memory"),
        memory=MemoryConfig(),
        retrieval=RetrievalConfig(),
    )


@pytest.fixture
def conversations(clients):
    return ConversationStore(clients, config=DatabaseConfig(provider="memory"))


@pytest.fixture
def bot():
    return BotConfig(id="b1", owner_id="u1", slug="helper", name="Helper")


def memory_doc(doc_id, message, created_at, embedding, conversation_id=None):
    return {
        "_id": doc_id, "role": "user", "message": message, "embedding": embedding,
        "user_id": "u1", "chatbot_id": "b1", "conversation_id": conversation_id,
        "created_at": created_at,
    }


class TestMemoryEntry:

    def test_document_round_trip(self):
        entry = MemoryEntry(role="user", message="Hi", user_id="u1", chatbot_id="b1", embedding=[1.0])
        doc = entry.to_document()

        assert doc["_id"] == entry.id
        assert MemoryEntry.from_document(doc).message == "Hi"
        assert str(entry) == "user: Hi"


class TestMemoryStore:
    """Tests for saving and similarity search."""

    def test_save_embeds_message(self, memory_store, db):
        entry = memory_store.save_message("user", "order number 1234", "u1", "b1")

        stored = db.find_one("chat_memory", {"_id": entry.id})
        assert stored["embedding"] is not None
        assert stored["chatbot_id"] == "b1"

    def test_top_similar_in_process(self, memory_store, embedder):
        """Test ranking without native vector search."""
        memory_store.save_message("user", "my order number is 1234", "u1", "b1")
        memory_store.save_message("user", "the weather is nice", "u1", "b1")

        results = memory_store.top_similar(embedder.embed_query("order number"), "u1", "b1", limit=1)

        assert [r.message for r in results] == ["my order number is 1234"]
        assert results[0].score > 0

    def test_scope_is_per_bot(self, memory_store, embedder):
        memory_store.save_message("user", "secret plan", "u1", "other-bot")

        assert memory_store.top_similar(embedder.embed_query("secret plan"), "u1", "b1") == []

    def test_conversation_scope(self, memory_store, embedder):
        memory_store.save_message("user", "refund please", "u1", "b1", conversation_id="c1")
        memory_store.save_message("user", "refund please", "u1", "b1", conversation_id="c2")

        results = memory_store.top_similar(embedder.embed_query("refund"), "u1", "b1", conversation_id="c1")

        assert [r.conversation_id for r in results] == ["c1"]

    def test_ties_newest_first(self, memory_store, db):
        """Test that equal scores are ordered by most recent entry."""
        base = datetime(2024, 1, 1)
        db.insert_one("chat_memory", memory_doc("old", "same", base, [1.0, 0.0]))
        db.insert_one("chat_memory", memory_doc("new", "same", base + timedelta(hours=1), [1.0, 0.0]))

        results = memory_store.top_similar([1.0, 0.0], "u1", "b1")

        assert [r.id for r in results] == ["new", "old"]

    def test_native_search_used(self, embedder):
        """Test that native vector search results are returned as-is."""
        primary = Mock()
        primary.vector_search.return_value = [
            memory_doc("m1", "hello", datetime(2024, 1, 1), None) | {"score": 0.9}
        ]
        store = MemoryStore(DatabaseClients(primary=primary), embedder,
                            config=DatabaseConfig(), memory=MemoryConfig(), retrieval=RetrievalConfig())

        results = store.top_similar([1.0], "u1", "b1", conversation_id="c1", limit=2)

        assert results[0].score == 0.9
        args = primary.vector_search.call_args[0]
        assert args[0] == "chat_memory"
        assert args[1] == "memory_vector_index"
        assert args[3] == {"user_id": "u1", "chatbot_id": "b1", "conversation_id": "c1"}
        assert args[4] == 2
        primary.find.assert_not_called()

    def test_native_error_falls_back(self, embedder):
        primary = Mock()
        primary.vector_search.side_effect = RuntimeError("index missing")
        primary.find.return_value = []
        store = MemoryStore(DatabaseClients(primary=primary), embedder,
                            config=DatabaseConfig(), memory=MemoryConfig(), retrieval=RetrievalConfig())

        assert store.top_similar([1.0], "u1", "b1") == []
        assert primary.find.call_args.kwargs["limit"] == 1000


class TestTurnLog:
    """Tests for the single writer of chat turns."""

    def make_turns(self, conversations, memory_store, mirror=False):
        return TurnLog(conversations, memory_store, config=MemoryConfig(mirror_chat_turns=mirror))

    def test_chat_turns_not_mirrored_by_default(self, conversations, memory_store, bot, db):
        turns = self.make_turns(conversations, memory_store)

        log = turns.record_exchange(bot, None, [{"role": "user", "content": "2+2?"}], "4")

        assert len(turns.recent(log.conversation_id)) == 2
        assert db.count("chat_memory") == 0

    def test_chat_turns_mirrored(self, conversations, memory_store, bot, db):
        """Test that mirroring writes both turns into memory for the bot owner."""
        turns = self.make_turns(conversations, memory_store, mirror=True)

        log = turns.record_exchange(bot, None, [{"role": "user", "content": "2+2?"}], "4")

        rows = db.find("chat_memory")
        assert {r["role"] for r in rows} == {"user", "assistant"}
        assert all(r["user_id"] == "u1" and r["conversation_id"] == log.conversation_id for r in rows)

    def test_remember_blank(self, conversations, memory_store):
        turns = self.make_turns(conversations, memory_store)
        assert turns.remember("user", "   ", "u1", "b1") is False

    def test_remember_swallows_errors(self, conversations):
        """Test that a failing memory write never reaches the caller."""
        failing = Mock()
        failing.save_message.side_effect = RuntimeError("embedding down")
        turns = TurnLog(conversations, failing, config=MemoryConfig())

        assert turns.remember("user", "hello", "u1", "b1") is False

    def test_recent_without_conversation(self, conversations, memory_store):
        assert self.make_turns(conversations, memory_store).recent(None) == []

    def test_similar_delegates(self, conversations, memory_store, embedder):
        turns = self.make_turns(conversations, memory_store)
        turns.remember("user", "favourite colour is blue", "u1", "b1")

        results = turns.similar(embedder.embed_query("favourite colour"), "u1", "b1")

        assert results[0].message == "favourite colour is blue"
