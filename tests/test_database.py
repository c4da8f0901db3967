"""
Tests for Database Module

InMemoryDatabase behavior, write fallback and client construction.
Atlas calls are mocked.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, Mock

import pytest

from config.settings import DatabaseConfig
from botforge.database import (
    ASCENDING,
    DESCENDING,
    DatabaseClients,
    InMemoryDatabase,
    MongoDatabase,
    NativeSearchUnavailable,
    WriteResult,
    create_clients,
    write_with_fallback,
)
from botforge.errors import ConfigurationError


class TestInMemoryDatabase:
    """Tests for the in-memory backend."""

    @pytest.fixture
    def db(self):
        db = InMemoryDatabase()
        base = datetime(2024, 1, 1)
        db.insert_many("bots", [
            {"_id": "a", "slug": "alpha", "owner": "u1", "rank": 2, "at": base},
            {"_id": "b", "slug": "beta", "owner": "u1", "rank": 1, "at": base + timedelta(minutes=1)},
            {"_id": "c", "slug": "gamma", "owner": "u2", "rank": 1, "at": base + timedelta(minutes=2)},
        ])
        return db

    def test_equality_filter(self, db):
        """Test plain equality filters."""
        assert {d["_id"] for d in db.find("bots", {"owner": "u1"})} == {"a", "b"}

    def test_operators(self, db):
        """Test $ne, $in and case-insensitive $regex."""
        assert {d["_id"] for d in db.find("bots", {"owner": {"$ne": "u1"}})} == {"c"}
        assert {d["_id"] for d in db.find("bots", {"_id": {"$in": ["a", "c"]}})} == {"a", "c"}
        assert [d["_id"] for d in db.find("bots", {"slug": {"$regex": "ALP", "$options": "i"}})] == ["a"]

    def test_ne_matches_missing_field(self, db):
        """Test that $ne matches documents without the field."""
        assert db.count("bots", {"is_deleted": {"$ne": True}}) == 3

    def test_multi_key_sort(self, db):
        """Test sorting by rank ascending, then time descending."""
        docs = db.find("bots", sort=[("rank", ASCENDING), ("at", DESCENDING)])
        assert [d["_id"] for d in docs] == ["c", "b", "a"]

    def test_skip_and_limit(self, db):
        """Test pagination."""
        docs = db.find("bots", sort=[("at", ASCENDING)], skip=1, limit=1)
        assert [d["_id"] for d in docs] == ["b"]

    def test_update_and_delete(self, db):
        """Test update_one, delete_one and delete_many."""
        assert db.update_one("bots", {"_id": "a"}, {"slug": "renamed"}) is True
        assert db.find_one("bots", {"_id": "a"})["slug"] == "renamed"
        assert db.update_one("bots", {"_id": "zzz"}, {"slug": "x"}) is False

        assert db.delete_one("bots", {"_id": "a"}) is True
        assert db.delete_many("bots", {"owner": "u1"}) == 1
        assert db.count("bots") == 1

    def test_documents_are_copies(self, db):
        """Test that callers cannot mutate stored documents."""
        doc = db.find_one("bots", {"_id": "a"})
        doc["slug"] = "mutated"
        assert db.find_one("bots", {"_id": "a"})["slug"] == "alpha"

    def test_no_native_vector_search(self, db):
        """Test that vector search signals the in-process fallback."""
        with pytest.raises(NativeSearchUnavailable):
            db.vector_search("bots", "idx", [1.0], {}, 3)


class TestMongoDatabase:
    """Tests for the Atlas backend with a mocked driver."""

    def test_missing_uri(self):
        """Test that a missing URI is a configuration error."""
        db = MongoDatabase(None, "botforge")
        with pytest.raises(ConfigurationError):
            db.find("bots")

    def test_vector_search_pipeline(self):
        """Test the $vectorSearch aggregation and score projection."""
        db = MongoDatabase("mongodb://example", "botforge")
        db._db = MagicMock()
        collection = db._db.__getitem__.return_value
        collection.aggregate.return_value = [{"_id": "k1", "score": 0.9}]

        rows = db.vector_search("knowledge_chunks", "knowledge_vector_index", [0.1, 0.2],
                                {"user_id": "u1", "chatbot_id": "b1"}, 3)

        assert rows == [{"_id": "k1", "score": 0.9}]
        pipeline = collection.aggregate.call_args[0][0]
        stage = pipeline[0]["$vectorSearch"]
        assert stage["index"] == "knowledge_vector_index"
        assert stage["limit"] == 3
        assert stage["numCandidates"] == 100
        assert stage["filter"] == {"user_id": "u1", "chatbot_id": "b1"}
        assert pipeline[-1] == {"$project": {"embedding": 0}}

    def test_vector_search_score_is_cosine(self):
        """Test that the Atlas score (1 + cos) / 2 is mapped back to cosine."""
        db = MongoDatabase("mongodb://example", "botforge")
        db._db = MagicMock()
        collection = db._db.__getitem__.return_value
        collection.aggregate.return_value = []

        db.vector_search("knowledge_chunks", "knowledge_vector_index", [0.1], {}, 3)

        score = collection.aggregate.call_args[0][0][1]["$addFields"]["score"]
        assert score == {"$subtract": [{"$multiply": [2, {"$meta": "vectorSearchScore"}]}, 1]}


class TestWriteWithFallback:
    """Tests for the primary/elevated write policy."""

    def _failing(self):
        db = Mock()
        db.insert_one.side_effect = RuntimeError("permission denied")
        return db

    def test_primary_success(self):
        """Test SUCCESS when the primary client writes."""
        primary = InMemoryDatabase()
        outcome = write_with_fallback(
            DatabaseClients(primary=primary),
            lambda db: db.insert_one("messages", {"_id": "m1"})["_id"],
            "insert message",
        )

        assert outcome.result is WriteResult.SUCCESS
        assert outcome.value == "m1"
        assert outcome.ok

    def test_degraded_on_elevated(self):
        """Test DEGRADED when only the elevated client writes."""
        elevated = InMemoryDatabase()
        outcome = write_with_fallback(
            DatabaseClients(primary=self._failing(), elevated=elevated),
            lambda db: db.insert_one("messages", {"_id": "m1"}),
            "insert message",
        )

        assert outcome.result is WriteResult.DEGRADED
        assert elevated.count("messages") == 1

    def test_failed_without_elevated(self):
        """Test FAILED when the primary fails and no elevated client exists."""
        outcome = write_with_fallback(
            DatabaseClients(primary=self._failing()),
            lambda db: db.insert_one("messages", {}),
            "insert message",
        )

        assert outcome.result is WriteResult.FAILED
        assert not outcome.ok
        assert isinstance(outcome.error, RuntimeError)

    def test_failed_on_both(self):
        """Test FAILED when both clients fail."""
        outcome = write_with_fallback(
            DatabaseClients(primary=self._failing(), elevated=self._failing()),
            lambda db: db.insert_one("messages", {}),
            "insert message",
        )
        assert outcome.result is WriteResult.FAILED

    def test_combine(self):
        """Test that combine keeps the worse outcome."""
        assert WriteResult.SUCCESS.combine(WriteResult.DEGRADED) is WriteResult.DEGRADED
        assert WriteResult.FAILED.combine(WriteResult.SUCCESS) is WriteResult.FAILED
        assert WriteResult.SUCCESS.combine(WriteResult.SUCCESS) is WriteResult.SUCCESS


class TestCreateClients:
    """Tests for client construction from configuration."""

    def test_memory(self):
        clients = create_clients(DatabaseConfig(provider="memory"))
        assert isinstance(clients.primary, InMemoryDatabase)
        assert clients.elevated is None

    def test_mongodb_with_service_credential(self):
        """Test that a service URI adds an elevated client."""
        clients = create_clients(DatabaseConfig(
            provider="mongodb",
            mongodb_uri="mongodb://primary",
            mongodb_service_uri="mongodb://service",
        ))

        assert isinstance(clients.primary, MongoDatabase)
        assert clients.elevated.label == "elevated"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_clients(DatabaseConfig(provider="sqlite"))  # type: ignore
