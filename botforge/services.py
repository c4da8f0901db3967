"""
Service Container

Builds every component once per process and hands them to the API layer.
Nothing is a module-level singleton: tests (or other entry points) pass
their own clients, embedder or router and get a fully wired container.

Usage:
    services = build_services()                              # from environment
    services = build_services(clients=DatabaseClients(InMemoryDatabase()),
                              embedding_service=stub_embedder,
                              router=stub_router)            # tests
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config.settings import get_settings, Settings
from botforge.chatbots import BotRepository
from botforge.chunker import DocumentChunker
from botforge.conversations import ConversationStore
from botforge.database import DatabaseClients, create_clients
from botforge.embeddings import EmbeddingService
from botforge.ingestion import KnowledgeIngestor
from botforge.llm_service import LLMRouter
from botforge.memory import MemoryStore, TurnLog
from botforge.rag_chain import ChatOrchestrator
from botforge.vector_store import KnowledgeStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """All wired components used by request handlers."""

    settings: Settings
    clients: DatabaseClients
    embedding_service: EmbeddingService
    router: LLMRouter
    bots: BotRepository
    conversations: ConversationStore
    knowledge: KnowledgeStore
    memory: MemoryStore
    turn_log: TurnLog
    ingestor: KnowledgeIngestor
    orchestrator: ChatOrchestrator


def build_services(
    settings: Optional[Settings] = None,
    clients: Optional[DatabaseClients] = None,
    embedding_service: Optional[EmbeddingService] = None,
    router: Optional[LLMRouter] = None,
) -> Services:
    """
    Wire the application components.

    Args:
        settings: Optional Settings (default: get_settings())
        clients: Optional database clients (default: from settings)
        embedding_service: Optional embedder (default: from settings)
        router: Optional LLM router (default: from settings)

    Returns:
        Services container
    """
    settings = settings or get_settings()

    clients = clients or create_clients(settings.database)
    embedding_service = embedding_service or EmbeddingService(config=settings.embedding)
    router = router or LLMRouter(config=settings.llm)

    bots = BotRepository(clients, config=settings.database, auth=settings.auth)
    conversations = ConversationStore(clients, config=settings.database)
    knowledge = KnowledgeStore(
        clients,
        dimension=embedding_service.dimension,
        config=settings.database,
        retrieval=settings.retrieval,
        chunking=settings.chunking,
    )
    memory = MemoryStore(
        clients,
        embedding_service,
        config=settings.database,
        memory=settings.memory,
        retrieval=settings.retrieval,
    )
    turn_log = TurnLog(conversations, memory, config=settings.memory)
    ingestor = KnowledgeIngestor(
        DocumentChunker(config=settings.chunking),
        embedding_service,
        knowledge,
    )
    orchestrator = ChatOrchestrator(
        bots, embedding_service, knowledge, turn_log, router, settings=settings
    )

    logger.info(
        f"Services initialized: database={settings.database.provider}, "
        f"embedding={embedding_service.provider_name}"
    )

    return Services(
        settings=settings,
        clients=clients,
        embedding_service=embedding_service,
        router=router,
        bots=bots,
        conversations=conversations,
        knowledge=knowledge,
        memory=memory,
        turn_log=turn_log,
        ingestor=ingestor,
        orchestrator=orchestrator,
    )
