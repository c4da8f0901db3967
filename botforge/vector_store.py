"""
Vector Store Module

Similarity ranking and the knowledge chunk store.

Retrieval Paths:
- Native: the database ranks the chunks itself (Atlas Vector Search)
- Fallback: fetch up to 1000 candidate rows for the bot and rank them
  in-process with cosine similarity

The fallback runs whenever the native path errors or the backend has no
native search, so retrieval keeps working on a fresh cluster without indexes.

Design Rationale:
- Ranking is a pure function over candidates, shared by knowledge and memory
- Dimension mismatches are rejected at ingestion, not masked at query time
- Knowledge rows are strictly scoped by (user_id, chatbot_id)
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from config.settings import get_settings, DatabaseConfig, RetrievalConfig, ChunkingConfig
from botforge.chunker import Chunk
from botforge.database import DatabaseClients, NativeSearchUnavailable
from botforge.embeddings import cosine_similarity
from botforge.errors import DimensionMismatchError

# Configure logging
logger = logging.getLogger(__name__)


class SearchResult:
    """
    Represents a single search result.

    Attributes:
        chunk: The retrieved Chunk object (chunk_id is the stored row id)
        score: Similarity score (higher is better)
        rank: Position in results (1-indexed)
    """

    def __init__(self, chunk: Chunk, score: float, rank: int = 0):
        self.chunk = chunk
        self.score = score
        self.rank = rank

    def __repr__(self) -> str:
        return (
            f"SearchResult(source='{self.chunk.source}', "
            f"score={self.score:.4f}, rank={self.rank})"
        )

    @property
    def file_name(self) -> Optional[str]:
        return self.chunk.source or None

    def to_dict(self) -> Dict[str, Any]:
        """Public summary used in API responses."""
        return {
            "id": self.chunk.chunk_id,
            "file_name": self.file_name,
            "similarity": self.score,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any], score: float, rank: int) -> "SearchResult":
        """Build a result from a stored knowledge row."""
        chunk = Chunk(
            text=doc.get("chunk_text", ""),
            chunk_id=str(doc["_id"]),
            source=doc.get("file_name") or "",
            chunk_index=doc.get("chunk_index", 0),
            metadata={"user_id": doc.get("user_id"), "chatbot_id": doc.get("chatbot_id")},
        )
        return cls(chunk=chunk, score=score, rank=rank)


def rank_by_similarity(
    query_embedding: List[float],
    candidates: List[Dict[str, Any]],
    top_k: int = 3,
    threshold: Optional[float] = None,
    tiebreak: Optional[Callable[[Dict[str, Any]], Any]] = None,
) -> List[Tuple[Dict[str, Any], float]]:
    """
    Rank candidate rows by cosine similarity to a query vector.

    Args:
        query_embedding: Query vector
        candidates: Rows carrying an ``embedding`` field
        top_k: Maximum results to return
        threshold: Optional minimum similarity; rows below it never appear
        tiebreak: Optional key; equal scores are ordered by it, descending.
            Without it equal scores keep their input order.

    Returns:
        (row, score) pairs, best first
    """
    scored = [
        (row, cosine_similarity(query_embedding, row.get("embedding") or []))
        for row in candidates
    ]

    if threshold is not None:
        scored = [(row, score) for row, score in scored if score >= threshold]

    if tiebreak is not None:
        scored.sort(key=lambda pair: tiebreak(pair[0]), reverse=True)

    # sort() is stable, so ties keep the order established above
    scored.sort(key=lambda pair: pair[1], reverse=True)

    return scored[:max(top_k, 0)]


class KnowledgeStore:
    """
    Knowledge chunk store for all bots.

    Example:
        store = KnowledgeStore(clients, dimension=1536)
        store.add_chunks(user_id, chatbot_id, chunks)  # chunks carry embeddings
        results = store.search(query_embedding, user_id, chatbot_id, top_k=3)
        for result in results:
            print(result.file_name, result.score)
    """

    def __init__(
        self,
        clients: DatabaseClients,
        dimension: int,
        config: Optional[DatabaseConfig] = None,
        retrieval: Optional[RetrievalConfig] = None,
        chunking: Optional[ChunkingConfig] = None,
    ):
        """
        Initialize the knowledge store.

        Args:
            clients: Injected database clients
            dimension: Embedding dimension every stored vector must have
            config: Optional DatabaseConfig (collection and index names)
            retrieval: Optional RetrievalConfig (candidate limit)
            chunking: Optional ChunkingConfig (insert batch size)
        """
        settings = get_settings()
        self.clients = clients
        self.dimension = dimension
        self.config = config or settings.database
        self.retrieval = retrieval or settings.retrieval
        self.insert_batch_size = (chunking or settings.chunking).insert_batch_size

        self.collection = self.config.knowledge_collection
        self.vector_index = self.config.knowledge_vector_index

        logger.info(
            f"KnowledgeStore initialized: collection={self.collection}, "
            f"dimension={dimension}"
        )

    def _validate(self, chunks: List[Chunk]) -> None:
        for chunk in chunks:
            size = len(chunk.embedding) if chunk.embedding is not None else 0
            if size != self.dimension:
                raise DimensionMismatchError(
                    f"Embedding for chunk {chunk.chunk_index} of {chunk.source} has "
                    f"{size} dimensions, expected {self.dimension}"
                )

    def add_chunks(self, user_id: str, chatbot_id: str, chunks: List[Chunk]) -> int:
        """
        Insert embedded chunks for one bot.

        All chunks are validated before the first write, so a bad vector
        leaves the store untouched.

        Args:
            user_id: Owner of the bot
            chatbot_id: Bot the chunks belong to
            chunks: Chunks with embeddings populated

        Returns:
            Number of rows inserted

        Raises:
            DimensionMismatchError: If any embedding has the wrong size
        """
        if not chunks:
            return 0

        self._validate(chunks)

        now = datetime.utcnow()
        documents = [
            {
                "_id": str(uuid.uuid4()),
                "user_id": user_id,
                "chatbot_id": chatbot_id,
                "file_name": chunk.source or None,
                "chunk_index": chunk.chunk_index,
                "chunk_text": chunk.text,
                "embedding": chunk.embedding,
                "created_at": now,
            }
            for chunk in chunks
        ]

        inserted = 0
        for i in range(0, len(documents), self.insert_batch_size):
            batch = documents[i:i + self.insert_batch_size]
            inserted += self.clients.primary.insert_many(self.collection, batch)

        logger.info(f"Inserted {inserted} knowledge chunks for bot {chatbot_id}")
        return inserted

    def search(
        self,
        query_embedding: List[float],
        user_id: str,
        chatbot_id: str,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        """
        Find the chunks most similar to a query vector.

        Args:
            query_embedding: Query vector
            user_id: Owner of the bot
            chatbot_id: Bot to search
            top_k: Number of results (default from config)
            threshold: Minimum similarity (default from config; None keeps
                every match)

        Returns:
            List of SearchResult objects, best first
        """
        top_k = top_k or self.retrieval.top_k
        if threshold is None:
            threshold = self.retrieval.similarity_threshold

        scope = {"user_id": user_id, "chatbot_id": chatbot_id}

        try:
            rows = self.clients.primary.vector_search(
                self.collection, self.vector_index, query_embedding, scope, top_k
            )
            ranked = [(row, float(row.get("score", 0.0))) for row in rows]
            if threshold is not None:
                ranked = [(row, score) for row, score in ranked if score >= threshold]
            logger.debug(f"Native knowledge search returned {len(ranked)} results")
        except NativeSearchUnavailable:
            ranked = self._fallback_search(query_embedding, scope, top_k, threshold)
        except Exception as e:
            logger.warning(f"Native knowledge search failed, ranking in-process: {e}")
            ranked = self._fallback_search(query_embedding, scope, top_k, threshold)

        return [
            SearchResult.from_document(row, score, rank)
            for rank, (row, score) in enumerate(ranked, 1)
        ]

    def _fallback_search(
        self,
        query_embedding: List[float],
        scope: Dict[str, Any],
        top_k: int,
        threshold: Optional[float],
    ) -> List[Tuple[Dict[str, Any], float]]:
        candidates = self.clients.primary.find(
            self.collection, scope, limit=self.retrieval.candidate_limit
        )
        logger.debug(f"Ranking {len(candidates)} knowledge candidates in-process")
        return rank_by_similarity(query_embedding, candidates, top_k, threshold)

    def count(self, user_id: str, chatbot_id: str) -> int:
        """Return the number of chunks stored for a bot."""
        return self.clients.primary.count(
            self.collection, {"user_id": user_id, "chatbot_id": chatbot_id}
        )

    def delete_for_bot(self, chatbot_id: str) -> int:
        """Delete every chunk of a bot."""
        deleted = self.clients.primary.delete_many(self.collection, {"chatbot_id": chatbot_id})
        logger.info(f"Deleted {deleted} knowledge chunks for bot {chatbot_id}")
        return deleted
