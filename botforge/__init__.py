"""
BotForge - Multi-tenant chatbot builder core

This package contains the chat runtime and builder components:
- DocumentChunker: Word-packing chunker and document text extraction
- EmbeddingService: Embedding generation (OpenAI or local)
- KnowledgeStore: Per-bot knowledge chunks with vector search
- LLMRouter: Provider routing (OpenAI/DeepSeek/gateway) with vision override
- BotRepository: Bot configuration CRUD and slug handling
- ConversationStore: Conversations, messages and admin-manual turns
- MemoryStore / TurnLog: Semantic chat memory and turn logging
- KnowledgeIngestor: Text/document ingestion into the knowledge store
- ChatOrchestrator: Retrieval + prompt assembly + generation
"""

from .chunker import DocumentChunker, Chunk
from .embeddings import EmbeddingService
from .vector_store import KnowledgeStore, SearchResult
from .llm_service import LLMRouter, LLMResponse, Provider
from .models import BotConfig, BotUpdate, BotDraft
from .chatbots import BotRepository
from .conversations import ConversationStore, Conversation, Message
from .memory import MemoryStore, TurnLog
from .ingestion import KnowledgeIngestor
from .rag_chain import ChatOrchestrator, ChatReply, RAGResponse
from .services import Services, build_services

__all__ = [
    # Knowledge pipeline
    "DocumentChunker",
    "Chunk",
    "EmbeddingService",
    "KnowledgeStore",
    "SearchResult",
    "KnowledgeIngestor",
    # Generation
    "LLMRouter",
    "LLMResponse",
    "Provider",
    "ChatOrchestrator",
    "ChatReply",
    "RAGResponse",
    # Bots and conversations
    "BotConfig",
    "BotUpdate",
    "BotDraft",
    "BotRepository",
    "ConversationStore",
    "Conversation",
    "Message",
    "MemoryStore",
    "TurnLog",
    # Wiring
    "Services",
    "build_services",
]
