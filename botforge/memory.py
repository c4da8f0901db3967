"""
Chat Memory Module

Long-term, similarity-searchable memory of chat turns, and the turn log
that ties it to the conversation message log.

Design Rationale:
- Every memory entry carries its own embedding, scoped by user, bot and
  (optionally) conversation
- Retrieval prefers native vector search and falls back to in-process
  ranking over up to 1000 rows, breaking ties by newest entry first
- The message log and the memory store are two read projections of one
  turn log: recency-ordered (messages) and similarity-ordered (memory).
  TurnLog is the single writer for both
- Memory writes are best effort; a failure never reaches the caller

Usage:
    turns = TurnLog(conversation_store, memory_store)
    log = turns.record_exchange(bot, None, messages, reply)
    recent = turns.recent(log.conversation_id)
    similar = turns.similar(query_embedding, bot.owner_id, bot.id)
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.settings import get_settings, DatabaseConfig, MemoryConfig, RetrievalConfig
from botforge.conversations import ConversationStore, ExchangeLog, Message
from botforge.database import DatabaseClients, NativeSearchUnavailable
from botforge.embeddings import EmbeddingService
from botforge.models import BotConfig
from botforge.vector_store import rank_by_similarity

logger = logging.getLogger(__name__)


@dataclass
class MemoryEntry:
    """
    A single remembered turn.

    Attributes:
        id: Entry id
        role: "user", "assistant" or "system"
        message: Turn text
        user_id: Bot owner the entry is scoped to
        chatbot_id: Bot the entry is scoped to
        conversation_id: Optional conversation scope
        embedding: Vector of the message text
        created_at: When the entry was written
        score: Similarity to the query (set on retrieval)
    """
    role: str
    message: str
    user_id: str
    chatbot_id: str
    conversation_id: Optional[str] = None
    embedding: Optional[List[float]] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)
    score: Optional[float] = None

    @property
    def content(self) -> str:
        return self.message

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "role": self.role,
            "message": self.message,
            "embedding": self.embedding,
            "user_id": self.user_id,
            "chatbot_id": self.chatbot_id,
            "conversation_id": self.conversation_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any], score: Optional[float] = None) -> "MemoryEntry":
        return cls(
            id=str(doc["_id"]),
            role=doc["role"],
            message=doc.get("message") or "",
            user_id=doc["user_id"],
            chatbot_id=doc["chatbot_id"],
            conversation_id=doc.get("conversation_id"),
            embedding=doc.get("embedding"),
            created_at=doc["created_at"],
            score=score if score is not None else doc.get("score"),
        )

    def __str__(self) -> str:
        return f"{self.role}: {self.message}"


class MemoryStore:
    """
    Similarity-ordered projection of the turn log (``chat_memory``).

    Example:
        memory = MemoryStore(clients, embedding_service)
        memory.save_message("user", "My order number is 1234", owner_id, bot_id)
        memory.top_similar(embedding_service.embed_query("order number"), owner_id, bot_id)
    """

    def __init__(
        self,
        clients: DatabaseClients,
        embedding_service: EmbeddingService,
        config: Optional[DatabaseConfig] = None,
        memory: Optional[MemoryConfig] = None,
        retrieval: Optional[RetrievalConfig] = None,
    ):
        settings = get_settings()
        self.clients = clients
        self.embedding_service = embedding_service
        self.config = config or settings.database
        self.memory = memory or settings.memory
        self.retrieval = retrieval or settings.retrieval

        self.collection = self.config.memory_collection
        self.vector_index = self.config.memory_vector_index

    def save_message(
        self,
        role: str,
        message: str,
        user_id: str,
        chatbot_id: str,
        conversation_id: Optional[str] = None,
        embedding: Optional[List[float]] = None,
    ) -> MemoryEntry:
        """
        Embed (unless an embedding is given) and append a memory entry.

        Raises:
            EmbeddingError: If the message cannot be embedded
        """
        if embedding is None:
            embedding = self.embedding_service.embed_text(message)

        entry = MemoryEntry(
            role=role,
            message=message,
            user_id=user_id,
            chatbot_id=chatbot_id,
            conversation_id=conversation_id,
            embedding=embedding,
        )
        self.clients.primary.insert_one(self.collection, entry.to_document())
        logger.debug(f"Saved {role} memory entry {entry.id} for bot {chatbot_id}")
        return entry

    def top_similar(
        self,
        query_embedding: List[float],
        user_id: str,
        chatbot_id: str,
        conversation_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[MemoryEntry]:
        """
        Return the entries most similar to a query vector, best first.

        Args:
            query_embedding: Query vector
            user_id: Scope owner
            chatbot_id: Scope bot
            conversation_id: Optional conversation scope
            limit: Maximum entries (default from config)
        """
        limit = limit or self.memory.top_similar

        scope: Dict[str, Any] = {"user_id": user_id, "chatbot_id": chatbot_id}
        if conversation_id:
            scope["conversation_id"] = conversation_id

        try:
            rows = self.clients.primary.vector_search(
                self.collection, self.vector_index, query_embedding, scope, limit
            )
            return [MemoryEntry.from_document(row) for row in rows]
        except NativeSearchUnavailable:
            pass
        except Exception as e:
            logger.warning(f"Native memory search failed, ranking in-process: {e}")

        candidates = self.clients.primary.find(
            self.collection, scope, limit=self.retrieval.candidate_limit
        )
        ranked = rank_by_similarity(
            query_embedding,
            candidates,
            top_k=limit,
            tiebreak=lambda row: row.get("created_at") or datetime.min,
        )
        return [MemoryEntry.from_document(row, score) for row, score in ranked]

    def delete_for_bot(self, chatbot_id: str) -> int:
        return self.clients.primary.delete_many(self.collection, {"chatbot_id": chatbot_id})


class TurnLog:
    """
    Single writer for chat turns, with two read projections.

    - recent(): recency-ordered, from the conversation message log
    - similar(): similarity-ordered, from the memory store

    Public chat turns go to the message log; they are mirrored into memory
    only when MEMORY_MIRROR_CHAT is enabled. remember() writes the
    similarity projection alone (used by the knowledge query endpoint).
    """

    def __init__(
        self,
        conversations: ConversationStore,
        memory_store: MemoryStore,
        config: Optional[MemoryConfig] = None,
    ):
        self.conversations = conversations
        self.memory_store = memory_store
        self.config = config or get_settings().memory

    @property
    def mirrors_chat(self) -> bool:
        return self.config.mirror_chat_turns

    def record_exchange(
        self,
        bot: BotConfig,
        conversation_id: Optional[str],
        messages: List[Dict[str, Any]],
        reply: str,
        query_embedding: Optional[List[float]] = None,
    ) -> ExchangeLog:
        """
        Log a user/assistant exchange.

        Args:
            bot: Bot that answered
            conversation_id: Existing conversation, or None
            messages: Caller messages (the last user one is logged)
            reply: Assistant reply
            query_embedding: Embedding of the last user message, if known

        Returns:
            ExchangeLog from the message log
        """
        log = self.conversations.log_exchange(bot, conversation_id, messages, reply)

        if self.mirrors_chat:
            last = messages[-1] if messages else {}
            if last.get("role") == "user" and isinstance(last.get("content"), str):
                self.remember(
                    "user", last["content"], bot.owner_id, bot.id,
                    log.conversation_id, embedding=query_embedding,
                )
            if reply:
                self.remember("assistant", reply, bot.owner_id, bot.id, log.conversation_id)

        return log

    def remember(
        self,
        role: str,
        message: str,
        user_id: str,
        chatbot_id: str,
        conversation_id: Optional[str] = None,
        embedding: Optional[List[float]] = None,
    ) -> bool:
        """Write one memory entry; failures are logged and reported as False."""
        if not message or not message.strip():
            return False
        try:
            self.memory_store.save_message(
                role, message, user_id, chatbot_id, conversation_id, embedding=embedding
            )
            return True
        except Exception as e:
            logger.warning(f"Memory write failed for bot {chatbot_id}: {e}")
            return False

    def recent(self, conversation_id: Optional[str], limit: Optional[int] = None) -> List[Message]:
        """Last messages of a conversation, oldest first."""
        if not conversation_id:
            return []
        return self.conversations.recent_messages(conversation_id, limit or self.config.recent_window)

    def similar(
        self,
        query_embedding: List[float],
        user_id: str,
        chatbot_id: str,
        conversation_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[MemoryEntry]:
        """Most similar remembered turns, best first."""
        return self.memory_store.top_similar(
            query_embedding, user_id, chatbot_id, conversation_id, limit
        )
