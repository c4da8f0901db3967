"""
Knowledge Ingestion

Turns pasted text or an uploaded document into stored, embedded chunks:

    base64 document -> extract text -> chunk (300-500 words)
      -> embed (64 per request) -> validate dimensions -> insert (500 per batch)
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from botforge.chunker import DocumentChunker, decode_base64_document, extract_text
from botforge.embeddings import EmbeddingService
from botforge.errors import InvalidRequestError, UnprocessableError
from botforge.vector_store import KnowledgeStore

logger = logging.getLogger(__name__)

# Source labels for chunks without an original file name
PASTED_TEXT_LABEL = "manual.txt"
UNNAMED_UPLOAD_LABEL = "upload.pdf"


@dataclass
class IngestResult:
    """Counts reported back to the builder."""

    chunks: int
    inserted: int
    file_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, "chunks": self.chunks, "inserted": self.inserted}


class KnowledgeIngestor:
    """
    Ingest knowledge into a bot's store.

    Example:
        ingestor = KnowledgeIngestor(chunker, embedding_service, knowledge_store)
        result = ingestor.ingest(owner_id, bot_id, file_base64=payload, file_name="faq.pdf")
        print(result.inserted)
    """

    def __init__(
        self,
        chunker: DocumentChunker,
        embedding_service: EmbeddingService,
        knowledge_store: KnowledgeStore,
    ):
        self.chunker = chunker
        self.embedding_service = embedding_service
        self.knowledge_store = knowledge_store

    def ingest(
        self,
        user_id: str,
        chatbot_id: str,
        text: Optional[str] = None,
        file_base64: Optional[str] = None,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> IngestResult:
        """
        Chunk, embed and store text or a base64 document.

        Args:
            user_id: Bot owner
            chatbot_id: Target bot
            text: Raw text (used when no file is given)
            file_base64: Base64 or data-URL encoded document
            file_name: Original file name (type detection and source label)
            mime_type: Optional MIME type

        Returns:
            IngestResult with chunk and insert counts

        Raises:
            InvalidRequestError: If neither text nor a file is given
            UnprocessableError: If no text could be extracted
            EmbeddingError: If embedding fails
            DimensionMismatchError: If the embedder returns wrong-sized vectors
        """
        if file_base64:
            data = decode_base64_document(file_base64)
            text = extract_text(data, file_name, mime_type)
            source_name = file_name or UNNAMED_UPLOAD_LABEL
        elif text is None:
            raise InvalidRequestError("Provide text or fileBase64")
        else:
            source_name = file_name or PASTED_TEXT_LABEL

        if not text or not text.strip():
            raise UnprocessableError("No text to ingest")

        chunks = self.chunker.process_text(
            text,
            source_name=source_name,
            metadata={"user_id": user_id, "chatbot_id": chatbot_id},
        )
        if not chunks:
            raise UnprocessableError("No text to ingest")

        embeddings = self.embedding_service.embed_batch([c.text for c in chunks])
        for chunk, embedding in zip(chunks, embeddings):
            chunk.embedding = embedding

        inserted = self.knowledge_store.add_chunks(user_id, chatbot_id, chunks)

        logger.info(
            f"Ingested {source_name} into bot {chatbot_id}: "
            f"{len(chunks)} chunks, {inserted} inserted"
        )
        return IngestResult(chunks=len(chunks), inserted=inserted, file_name=source_name)
