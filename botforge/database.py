"""
Database Module

Document store access for bots, knowledge chunks, conversations, messages and
chat memory.

Two backends share one interface:
- MongoDB Atlas (production): documents plus Atlas Vector Search, which
  ranks inside the database
- In-memory (development/tests): plain dict storage, no native vector
  search, so callers fall back to in-process ranking

Design Rationale:
- Clients are constructed explicitly and passed into each component, never
  held as module-level globals
- Two credentials are available: a primary (least-privilege) client and an
  optional elevated (service) client used as a write fallback
- write_with_fallback turns "try primary, then elevated" into one call that
  reports SUCCESS, DEGRADED or FAILED instead of raising

Usage:
    clients = create_clients()
    outcome = write_with_fallback(
        clients,
        lambda db: db.insert_one("messages", {...}),
        "insert message",
    )
    if outcome.result is WriteResult.FAILED:
        ...
"""

import copy
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from config.settings import get_settings, DatabaseConfig
from botforge.errors import ConfigurationError

# Configure logging
logger = logging.getLogger(__name__)

SortSpec = Sequence[Tuple[str, int]]

ASCENDING = 1
DESCENDING = -1


class NativeSearchUnavailable(Exception):
    """Raised by backends that cannot rank vectors inside the store."""


class BaseDatabase(ABC):
    """
    Abstract base class for document stores.

    Documents are plain dicts keyed by a string ``_id``. Filters use the
    MongoDB query subset: equality, ``$ne``, ``$in`` and ``$regex`` (with
    ``$options``). Sorts are lists of ``(field, direction)`` pairs.
    """

    @abstractmethod
    def insert_one(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a document and return it."""
        pass

    @abstractmethod
    def insert_many(self, collection: str, documents: List[Dict[str, Any]]) -> int:
        """Insert documents and return how many were written."""
        pass

    @abstractmethod
    def find(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return matching documents."""
        pass

    @abstractmethod
    def find_one(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the first matching document or None."""
        pass

    @abstractmethod
    def update_one(self, collection: str, filter_dict: Dict[str, Any], values: Dict[str, Any]) -> bool:
        """Set ``values`` on the first matching document. True if one matched."""
        pass

    @abstractmethod
    def delete_one(self, collection: str, filter_dict: Dict[str, Any]) -> bool:
        """Delete the first matching document. True if one was deleted."""
        pass

    @abstractmethod
    def delete_many(self, collection: str, filter_dict: Dict[str, Any]) -> int:
        """Delete all matching documents and return the count."""
        pass

    @abstractmethod
    def count(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        """Count matching documents."""
        pass

    @abstractmethod
    def vector_search(
        self,
        collection: str,
        index: str,
        query_embedding: List[float],
        filter_dict: Dict[str, Any],
        limit: int,
    ) -> List[Dict[str, Any]]:
        """
        Rank documents by vector similarity inside the store.

        Returns:
            Documents (without their embedding) with a ``score`` field,
            best first

        Raises:
            NativeSearchUnavailable: If the backend cannot rank natively
        """
        pass


class MongoDatabase(BaseDatabase):
    """
    MongoDB Atlas backend.

    Requires:
    - MongoDB Atlas cluster with Vector Search enabled
    - Vector search indexes on knowledge_chunks and chat_memory
      (see scripts/setup_mongodb.py)
    """

    def __init__(self, uri: Optional[str], database: str, label: str = "primary"):
        """
        Initialize the MongoDB backend (connection is lazy).

        Args:
            uri: MongoDB connection URI
            database: Database name
            label: Credential label for logs ("primary" or "elevated")
        """
        self.uri = uri
        self.database_name = database
        self.label = label

        self._client = None
        self._db = None

        logger.info(f"MongoDatabase initialized: db={database}, credential={label}")

    def _connect(self):
        """Establish connection to MongoDB."""
        if self._db is not None:
            return self._db

        if not self.uri:
            raise ConfigurationError(
                "MongoDB URI not configured. Set MONGODB_URI environment variable."
            )

        from pymongo import MongoClient

        self._client = MongoClient(self.uri)
        self._db = self._client[self.database_name]

        logger.info(f"Connected to MongoDB ({self.label})")
        return self._db

    def _collection(self, name: str):
        return self._connect()[name]

    def insert_one(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        self._collection(collection).insert_one(document)
        return document

    def insert_many(self, collection: str, documents: List[Dict[str, Any]]) -> int:
        if not documents:
            return 0
        result = self._collection(collection).insert_many(documents)
        return len(result.inserted_ids)

    def find(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self._collection(collection).find(filter_dict or {})
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def find_one(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._collection(collection).find_one(filter_dict)

    def update_one(self, collection: str, filter_dict: Dict[str, Any], values: Dict[str, Any]) -> bool:
        result = self._collection(collection).update_one(filter_dict, {"$set": values})
        return result.matched_count > 0

    def delete_one(self, collection: str, filter_dict: Dict[str, Any]) -> bool:
        result = self._collection(collection).delete_one(filter_dict)
        return result.deleted_count > 0

    def delete_many(self, collection: str, filter_dict: Dict[str, Any]) -> int:
        result = self._collection(collection).delete_many(filter_dict)
        return result.deleted_count

    def count(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        return self._collection(collection).count_documents(filter_dict or {})

    def vector_search(
        self,
        collection: str,
        index: str,
        query_embedding: List[float],
        filter_dict: Dict[str, Any],
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Rank with Atlas ``$vectorSearch``; filter fields must be indexed as filters."""
        pipeline = [
            {
                "$vectorSearch": {
                    "index": index,
                    "path": "embedding",
                    "queryVector": query_embedding,
                    "numCandidates": max(limit * 10, 100),  # Over-fetch for recall
                    "limit": limit,
                    "filter": filter_dict,
                }
            },
            # Atlas reports (1 + cos) / 2 for cosine indexes; map back to cosine
            {"$addFields": {"score": {"$subtract": [
                {"$multiply": [2, {"$meta": "vectorSearchScore"}]}, 1,
            ]}}},
            {"$project": {"embedding": 0}},
        ]

        results = list(self._collection(collection).aggregate(pipeline))
        logger.debug(f"Atlas vector search on {collection} returned {len(results)} results")
        return results


def _matches(document: Dict[str, Any], filter_dict: Optional[Dict[str, Any]]) -> bool:
    """Evaluate the supported MongoDB filter subset against a document."""
    for key, condition in (filter_dict or {}).items():
        value = document.get(key)

        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op == "$ne":
                    if value == operand:
                        return False
                elif op == "$in":
                    if value not in operand:
                        return False
                elif op == "$regex":
                    flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                    if not isinstance(value, str) or not re.search(operand, value, flags):
                        return False
                elif op == "$options":
                    continue
                else:
                    raise ValueError(f"Unsupported filter operator: {op}")
        elif value != condition:
            return False

    return True


class InMemoryDatabase(BaseDatabase):
    """
    Process-local backend for development and tests.

    Thread-safe; documents are deep-copied in and out so callers never hold
    references into the store. Has no native vector search.

    Example:
        db = InMemoryDatabase()
        db.insert_one("chatbots", {"_id": "b1", "slug": "helper"})
        db.find_one("chatbots", {"slug": "helper"})
    """

    def __init__(self):
        self._collections: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self.label = "memory"

        logger.info("InMemoryDatabase initialized")

    def _rows(self, collection: str) -> List[Dict[str, Any]]:
        return self._collections.setdefault(collection, [])

    def insert_one(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._rows(collection).append(copy.deepcopy(document))
        return document

    def insert_many(self, collection: str, documents: List[Dict[str, Any]]) -> int:
        with self._lock:
            self._rows(collection).extend(copy.deepcopy(d) for d in documents)
        return len(documents)

    def find(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [d for d in self._rows(collection) if _matches(d, filter_dict)]

        # Stable sorts applied last-key-first give a multi-key sort
        for field_name, direction in reversed(list(sort or [])):
            rows.sort(
                key=lambda d: (d.get(field_name) is not None, d.get(field_name)),
                reverse=direction == DESCENDING,
            )

        rows = rows[skip:]
        if limit:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    def find_one(self, collection: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.find(collection, filter_dict, limit=1)
        return rows[0] if rows else None

    def update_one(self, collection: str, filter_dict: Dict[str, Any], values: Dict[str, Any]) -> bool:
        with self._lock:
            for document in self._rows(collection):
                if _matches(document, filter_dict):
                    document.update(copy.deepcopy(values))
                    return True
        return False

    def delete_one(self, collection: str, filter_dict: Dict[str, Any]) -> bool:
        with self._lock:
            rows = self._rows(collection)
            for i, document in enumerate(rows):
                if _matches(document, filter_dict):
                    del rows[i]
                    return True
        return False

    def delete_many(self, collection: str, filter_dict: Dict[str, Any]) -> int:
        with self._lock:
            rows = self._rows(collection)
            kept = [d for d in rows if not _matches(d, filter_dict)]
            removed = len(rows) - len(kept)
            self._collections[collection] = kept
        return removed

    def count(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            return sum(1 for d in self._rows(collection) if _matches(d, filter_dict))

    def vector_search(
        self,
        collection: str,
        index: str,
        query_embedding: List[float],
        filter_dict: Dict[str, Any],
        limit: int,
    ) -> List[Dict[str, Any]]:
        raise NativeSearchUnavailable("InMemoryDatabase has no native vector search")


@dataclass
class DatabaseClients:
    """
    Credentialed clients injected into every data-access component.

    Attributes:
        primary: Least-privilege client used for reads and first write attempts
        elevated: Optional service-credential client used as a write fallback
    """

    primary: BaseDatabase
    elevated: Optional[BaseDatabase] = None


class WriteResult(Enum):
    """Outcome of a write attempted with fallback."""

    SUCCESS = "success"  # Primary client wrote it
    DEGRADED = "degraded"  # Primary failed, elevated client wrote it
    FAILED = "failed"  # Nothing was written

    def combine(self, other: "WriteResult") -> "WriteResult":
        """Return the worse of two outcomes."""
        order = [WriteResult.SUCCESS, WriteResult.DEGRADED, WriteResult.FAILED]
        return max(self, other, key=order.index)


@dataclass
class WriteOutcome:
    """Result of write_with_fallback: the outcome plus the operation's return value."""

    result: WriteResult
    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.result is not WriteResult.FAILED


def write_with_fallback(
    clients: DatabaseClients,
    operation: Callable[[BaseDatabase], Any],
    description: str,
) -> WriteOutcome:
    """
    Run a write with the primary client, falling back to the elevated one.

    Never raises for store errors: a double failure is logged and reported
    as WriteResult.FAILED so the caller can keep serving the request.

    Args:
        clients: Injected database clients
        operation: Callable performing the write against one client
        description: Short label for log lines (e.g. "insert message")

    Returns:
        WriteOutcome with the result and the operation's return value
    """
    try:
        return WriteOutcome(WriteResult.SUCCESS, operation(clients.primary))
    except Exception as primary_error:
        if clients.elevated is None:
            logger.error(f"{description} failed (no elevated client): {primary_error}")
            return WriteOutcome(WriteResult.FAILED, error=primary_error)

        logger.warning(f"{description} failed on primary client, retrying elevated: {primary_error}")

        try:
            value = operation(clients.elevated)
        except Exception as elevated_error:
            logger.error(f"{description} failed on both clients: {elevated_error}")
            return WriteOutcome(WriteResult.FAILED, error=elevated_error)

        return WriteOutcome(WriteResult.DEGRADED, value)


def create_clients(config: Optional[DatabaseConfig] = None) -> DatabaseClients:
    """
    Build the database clients described by configuration.

    Args:
        config: Optional DatabaseConfig (default from settings)

    Returns:
        DatabaseClients for the configured backend
    """
    config = config or get_settings().database

    if config.provider == "memory":
        return DatabaseClients(primary=InMemoryDatabase())

    if config.provider == "mongodb":
        primary = MongoDatabase(config.mongodb_uri, config.mongodb_database, "primary")
        elevated = None
        if config.mongodb_service_uri:
            elevated = MongoDatabase(config.mongodb_service_uri, config.mongodb_database, "elevated")
        return DatabaseClients(primary=primary, elevated=elevated)

    raise ValueError(f"Unknown database provider: {config.provider}")
