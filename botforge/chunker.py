"""
Document Chunker Module

Handles document segmentation for bot knowledge bases with metadata preservation.

Chunking Strategy:
- Paragraph-aware word packing: paragraphs (blank-line delimited) are packed
  into chunks of roughly 300-500 words
- A chunk is flushed before a paragraph that would push it past the maximum,
  but only once it already holds the minimum
- A chunk is always flushed once it reaches the maximum
- A single contiguous block longer than the maximum is hard-split on the
  maximum word count, with no overlap
- Metadata: source file name, chunk index

Document extraction (PDF, DOCX, plain text) goes through the LangChain
community loaders, the same ones used for files on disk.
"""

import base64
import binascii
import hashlib
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Dict, Any
from datetime import datetime

from langchain_community.document_loaders import (
    PyPDFLoader,
    TextLoader,
    Docx2txtLoader,
)

from config.settings import get_settings, ChunkingConfig
from botforge.errors import InvalidRequestError, UnprocessableError

# Configure logging
logger = logging.getLogger(__name__)

PARAGRAPH_BREAK = re.compile(r"\n\s*\n+")

PDF_MIME_TYPE = "application/pdf"
DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@dataclass
class Chunk:
    """
    Represents a single chunk of text with metadata.

    Attributes:
        text: The actual text content of the chunk
        chunk_id: Unique identifier for this chunk
        source: Original document file name
        chunk_index: Position of this chunk in the document (0-indexed)
        total_chunks: Total number of chunks from this document
        metadata: Additional metadata (owner, bot, extraction info)
        embedding: Vector embedding (populated later by EmbeddingService)
    """

    text: str
    chunk_id: str
    source: str
    chunk_index: int
    total_chunks: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None

    def __post_init__(self):
        """Generate chunk_id if not provided."""
        if not self.chunk_id:
            # Deterministic ID from content + source + index
            content_hash = hashlib.md5(
                f"{self.source}:{self.chunk_index}:{self.text[:100]}".encode()
            ).hexdigest()[:12]
            self.chunk_id = f"{Path(self.source).stem}_{self.chunk_index}_{content_hash}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert chunk to dictionary for storage."""
        return {
            "text": self.text,
            "chunk_id": self.chunk_id,
            "source": self.source,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "metadata": self.metadata,
            "embedding": self.embedding,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        """Create Chunk from dictionary."""
        return cls(
            text=data["text"],
            chunk_id=data["chunk_id"],
            source=data["source"],
            chunk_index=data["chunk_index"],
            total_chunks=data.get("total_chunks", 0),
            metadata=data.get("metadata", {}),
            embedding=data.get("embedding"),
        )


def _word_count(text: str) -> int:
    return len(text.split())


def _hard_split(text: str, max_words: int) -> List[str]:
    """Split on whitespace into max_words-sized groups joined by single spaces."""
    words = text.split()
    return [
        " ".join(words[i:i + max_words])
        for i in range(0, len(words), max_words)
    ]


def chunk_text_by_words(
    text: str,
    min_words: int = 300,
    max_words: int = 500,
) -> List[str]:
    """
    Split raw text into paragraph-aware chunks of min_words..max_words words.

    The minimum is advisory: the final partial chunk (or a text shorter
    than the minimum) is kept as is.

    Args:
        text: Raw extracted document text
        min_words: Words a chunk must hold before a boundary flush
        max_words: Words at which a chunk is always flushed

    Returns:
        List of non-empty chunk strings, in document order
    """
    cleaned = (text or "").replace("\u0000", "").replace("\r", "")
    paragraphs = [p.strip() for p in PARAGRAPH_BREAK.split(cleaned)]
    paragraphs = [p for p in paragraphs if p]

    # No paragraph breaks: a single contiguous block
    if len(paragraphs) == 1 and _word_count(paragraphs[0]) > max_words:
        return _hard_split(paragraphs[0], max_words)

    chunks: List[str] = []
    buffer: List[str] = []
    buffer_words = 0

    def flush():
        nonlocal buffer, buffer_words
        if buffer:
            chunks.append("\n\n".join(buffer))
        buffer = []
        buffer_words = 0

    for paragraph in paragraphs:
        words = _word_count(paragraph)

        if buffer_words + words > max_words and buffer_words >= min_words:
            flush()

        buffer.append(paragraph)
        buffer_words += words

        if buffer_words >= max_words:
            flush()

    flush()

    if not chunks and cleaned.strip():
        chunks = _hard_split(cleaned, max_words)

    return [c for c in chunks if c.strip()]


def decode_base64_document(payload: str) -> bytes:
    """
    Decode a base64 document payload.

    Accepts either a bare base64 string or a ``data:`` URL, in which case
    only the part after the last comma is decoded.

    Raises:
        InvalidRequestError: If the payload is empty or not valid base64
    """
    if not payload or not payload.strip():
        raise InvalidRequestError("File content required")

    encoded = payload.rsplit(",", 1)[-1] if payload.startswith("data:") else payload
    encoded = re.sub(r"\s+", "", encoded)

    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidRequestError(f"Invalid base64 payload: {e}")


def detect_document_type(file_name: Optional[str], mime_type: Optional[str] = None) -> str:
    """
    Resolve a document to one of ".pdf", ".docx" or ".txt".

    The MIME type wins when it names a known format; otherwise the file
    extension decides, and anything unknown is treated as UTF-8 text.
    """
    if mime_type == PDF_MIME_TYPE:
        return ".pdf"
    if mime_type == DOCX_MIME_TYPE:
        return ".docx"

    extension = Path(file_name or "").suffix.lower()
    if extension in (".pdf", ".docx"):
        return extension
    return ".txt"


def extract_text(
    data: bytes,
    file_name: Optional[str] = None,
    mime_type: Optional[str] = None,
) -> str:
    """
    Extract plain text from a document byte buffer.

    PDF and DOCX go through their LangChain loaders; everything else is read
    as UTF-8 text. The loaders work on paths, so the buffer is spooled to a
    temporary file first.

    Args:
        data: Raw document bytes
        file_name: Original file name (used for type detection)
        mime_type: Optional MIME type (takes precedence over the extension)

    Returns:
        Extracted text, stripped

    Raises:
        UnprocessableError: If the loader fails on the document
    """
    doc_type = detect_document_type(file_name, mime_type)
    loader_class = DocumentChunker.SUPPORTED_EXTENSIONS[doc_type]

    fd, tmp_path = tempfile.mkstemp(suffix=doc_type)
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(data)

        if loader_class is TextLoader:
            loader = TextLoader(tmp_path, encoding="utf-8")
        else:
            loader = loader_class(tmp_path)

        documents = loader.load()
    except Exception as e:
        logger.error(f"Text extraction failed for {file_name or doc_type}: {e}")
        raise UnprocessableError("Failed to extract text")
    finally:
        try:
            os.unlink(tmp_path)
        except OSError:
            logger.debug(f"Temporary file already removed: {tmp_path}")

    text = "\n\n".join(doc.page_content for doc in documents)
    logger.debug(
        f"Extracted {len(text)} chars from {file_name or 'upload'} "
        f"({len(documents)} pages/sections)"
    )
    return text.strip()


class DocumentChunker:
    """
    Handles document loading and chunking with metadata preservation.

    Supports multiple file formats:
    - PDF (.pdf)
    - Plain text (.txt, .md)
    - Word documents (.docx)

    Example:
        chunker = DocumentChunker()
        chunks = chunker.process_text(text, source_name="handbook.pdf")
        for chunk in chunks:
            print(f"Chunk {chunk.chunk_index}: {chunk.text[:100]}...")
    """

    # Supported file extensions and their loaders
    SUPPORTED_EXTENSIONS = {
        ".pdf": PyPDFLoader,
        ".txt": TextLoader,
        ".md": TextLoader,
        ".docx": Docx2txtLoader,
    }

    def __init__(
        self,
        min_words: Optional[int] = None,
        max_words: Optional[int] = None,
        config: Optional[ChunkingConfig] = None,
    ):
        """
        Initialize the DocumentChunker.

        Args:
            min_words: Advisory minimum words per chunk (default from config)
            max_words: Maximum words per chunk (default from config)
            config: Optional ChunkingConfig instance
        """
        self.config = config or get_settings().chunking

        self.min_words = min_words or self.config.min_words
        self.max_words = max_words or self.config.max_words

        if self.min_words > self.max_words:
            raise ValueError(
                f"min_words ({self.min_words}) cannot exceed max_words ({self.max_words})"
            )

        logger.info(
            f"DocumentChunker initialized: min_words={self.min_words}, "
            f"max_words={self.max_words}"
        )

    def process_text(
        self,
        text: str,
        source_name: str = "direct_input",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Chunk]:
        """
        Chunk raw text (pasted knowledge or extracted document text).

        Args:
            text: Raw text to chunk
            source_name: File name recorded on every chunk
            metadata: Optional metadata copied onto every chunk

        Returns:
            List of Chunk objects
        """
        metadata = dict(metadata or {})
        metadata["processed_at"] = datetime.utcnow().isoformat()

        texts = chunk_text_by_words(text, self.min_words, self.max_words)

        chunks = [
            Chunk(
                text=chunk_text,
                chunk_id="",
                source=source_name,
                chunk_index=i,
                total_chunks=len(texts),
                metadata=metadata.copy(),
            )
            for i, chunk_text in enumerate(texts)
        ]

        logger.info(
            f"Created {len(chunks)} chunks from {source_name} "
            f"(avg {sum(_word_count(c.text) for c in chunks) // max(len(chunks), 1)} words/chunk)"
        )
        return chunks

    def process_document(
        self,
        file_path: str | Path,
        additional_metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Chunk]:
        """
        Load a document from disk and chunk it.

        Args:
            file_path: Path to the document file
            additional_metadata: Extra metadata to add to all chunks

        Returns:
            List of Chunk objects

        Raises:
            FileNotFoundError: If document doesn't exist
            ValueError: If file type is not supported
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"Document not found: {file_path}")

        extension = file_path.suffix.lower()
        if extension not in self.SUPPORTED_EXTENSIONS:
            raise ValueError(
                f"Unsupported file type: {extension}. "
                f"Supported types: {list(self.SUPPORTED_EXTENSIONS.keys())}"
            )

        logger.info(f"Processing document: {file_path.name}")

        text = extract_text(file_path.read_bytes(), file_path.name)

        metadata = {"file_type": extension}
        if additional_metadata:
            metadata.update(additional_metadata)

        return self.process_text(text, source_name=file_path.name, metadata=metadata)
