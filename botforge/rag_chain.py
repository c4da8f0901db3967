"""
RAG Chain Module

Orchestrates the retrieval-augmented chat pipeline:
1. Load the bot configuration
2. Embed the latest user message
3. Retrieve knowledge chunks (and remembered turns, when mirroring is on)
4. Assemble a bounded context block
5. Build the system prompt
6. Route the completion to the bot's provider
7. Log the exchange (best effort)

This is the component that ties everything together.

Design Rationale:
- Retrieval is an enhancement, not a dependency: if embedding or search
  fails the request continues without context
- The completion call is the critical path; its failures propagate
- Logging failures never hide a reply; the reply comes back with a null
  conversation id instead

RAG Pipeline Flow:
    User Message → Query Embedding → Vector Search → Top-K Chunks
    → [System Prompt + Knowledge Context + History] → Provider Router → Reply → Turn Log
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config.settings import get_settings, Settings
from botforge.chatbots import BotRepository
from botforge.context import assemble_context, format_knowledge, format_turns
from botforge.database import WriteResult
from botforge.embeddings import EmbeddingService
from botforge.errors import InvalidRequestError
from botforge.llm_service import LLMRouter, extract_images
from botforge.memory import MemoryEntry, TurnLog
from botforge.models import BotConfig, BotDraft
from botforge.prompts import (
    KNOWLEDGE_SYSTEM_PROMPT,
    build_knowledge_context_message,
    build_knowledge_user_prompt,
    build_system_prompt,
)
from botforge.vector_store import KnowledgeStore, SearchResult

logger = logging.getLogger(__name__)

MOCK_PREVIEW_TEMPLATE = "🧪 Mock preview reply (no OPENAI_API_KEY). Bot: {name}\nUser: {last}"


@dataclass
class ChatReply:
    """
    Reply from the public chat runtime.

    Attributes:
        reply: Assistant text
        conversation_id: Conversation the exchange was logged to (None if logging failed)
        log_result: Outcome of the exchange logging
        sources: Knowledge chunks used as context
        metadata: Timing and model info
    """
    reply: str
    conversation_id: Optional[str]
    log_result: Optional[WriteResult] = None
    sources: List[SearchResult] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the API response shape."""
        return {"reply": self.reply, "conversationId": self.conversation_id}


@dataclass
class RAGResponse:
    """
    Answer from the knowledge query endpoint.

    Attributes:
        answer: Generated answer
        top: Knowledge chunks retrieved for the question
        metadata: Timing and model info
    """
    answer: str
    top: List[SearchResult]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "answer": self.answer,
            "top": [r.to_dict() for r in self.top],
        }


@dataclass
class GroundingResult:
    """Context block for a caller that runs its own model (realtime/voice)."""

    context: str
    top: List[SearchResult]
    total_chunks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "context": self.context,
            "top": [r.to_dict() for r in self.top],
            "retrieved": len(self.top),
            "totalChunks": self.total_chunks,
        }


def last_user_text(messages: List[Dict[str, Any]]) -> str:
    """Text of the most recent user message, with image references removed."""
    for message in reversed(messages):
        if message.get("role") == "user" and isinstance(message.get("content"), str):
            text, _ = extract_images(message["content"])
            return text
    return ""


class ChatOrchestrator:
    """
    Request-level orchestration for chat, knowledge query, grounding and preview.

    Example:
        orchestrator = ChatOrchestrator(bots, embeddings, knowledge, turn_log, router)
        reply = orchestrator.chat("math-tutor", [{"role": "user", "content": "2+2?"}])
        print(reply.reply, reply.conversation_id)
    """

    def __init__(
        self,
        bots: BotRepository,
        embedding_service: EmbeddingService,
        knowledge_store: KnowledgeStore,
        turn_log: TurnLog,
        router: LLMRouter,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            bots: Bot configuration repository
            embedding_service: Query embedder
            knowledge_store: Knowledge chunk store
            turn_log: Message log + memory writer
            router: LLM provider router
            settings: Optional Settings (default: get_settings())
        """
        self.settings = settings or get_settings()
        self.bots = bots
        self.embedding_service = embedding_service
        self.knowledge_store = knowledge_store
        self.turn_log = turn_log
        self.router = router

        self.retrieval = self.settings.retrieval
        self.llm = self.settings.llm

        logger.info(
            f"ChatOrchestrator initialized: top_k={self.retrieval.top_k}, "
            f"memory mirror={turn_log.mirrors_chat}"
        )

    def _retrieve_for_chat(self, bot: BotConfig, query: str):
        """
        Best-effort retrieval for the chat runtime.

        Returns:
            (knowledge results, remembered turns, query embedding or None)
        """
        if not query:
            return [], [], None

        try:
            embedding = self.embedding_service.embed_query(query)
        except Exception as e:
            logger.warning(f"Query embedding failed for bot {bot.id}, continuing without context: {e}")
            return [], [], None

        results: List[SearchResult] = []
        try:
            results = self.knowledge_store.search(
                embedding, bot.owner_id, bot.id,
                top_k=self.retrieval.top_k,
                threshold=self.retrieval.similarity_threshold,
            )
        except Exception as e:
            logger.warning(f"Knowledge retrieval failed for bot {bot.id}: {e}")

        memory: List[MemoryEntry] = []
        if self.turn_log.mirrors_chat:
            try:
                memory = self.turn_log.similar(embedding, bot.owner_id, bot.id)
            except Exception as e:
                logger.warning(f"Memory retrieval failed for bot {bot.id}: {e}")

        return results, memory, embedding

    def _fallback_reply(self, bot: BotConfig, results: List[SearchResult]) -> Optional[str]:
        """Configured fallback message when the bot must not answer without knowledge."""
        settings = bot.rules.settings
        if not bot.rules.uses_fallback_message or not settings.knowledge_fallback_message.strip():
            return None
        if results or bot.knowledge_base.strip():
            return None
        return settings.knowledge_fallback_message

    def chat(
        self,
        slug: str,
        messages: List[Dict[str, Any]],
        conversation_id: Optional[str] = None,
    ) -> ChatReply:
        """
        Answer a public chat request.

        Args:
            slug: Public bot slug
            messages: Conversation so far, ending with the user's turn
            conversation_id: Existing conversation, or None to start one

        Returns:
            ChatReply with the reply and the conversation id

        Raises:
            NotFoundError: If no public bot has this slug
            InvalidRequestError: If messages is empty
            ConfigurationError / UpstreamError: If the completion call fails
        """
        start_time = time.time()

        if not messages:
            raise InvalidRequestError("messages required")

        bot = self.bots.get_public(slug)
        query = last_user_text(messages)

        # Step 1: Retrieval (never fatal)
        results, memory, query_embedding = self._retrieve_for_chat(bot, query)
        retrieval_time = time.time() - start_time

        # Step 2: Knowledge fallback mode
        reply = self._fallback_reply(bot, results)
        model = bot.model

        if reply is None:
            # Step 3: Prompt
            llm_messages: List[Dict[str, Any]] = [
                {"role": "system", "content": build_system_prompt(bot.name, bot.directive, bot.knowledge_base)}
            ]
            if results or memory:
                turns = sorted(memory, key=lambda m: m.created_at)
                context = assemble_context(results, turns, self.retrieval.max_context_chars)
                llm_messages.append({"role": "system", "content": build_knowledge_context_message(context)})
            llm_messages.extend(messages)

            # Step 4: Generation (critical path)
            response = self.router.complete(
                model=bot.model,
                messages=llm_messages,
                temperature=bot.temperature,
                provider=bot.provider.value if bot.provider else None,
            )
            reply = response.content
            model = response.model
        else:
            logger.info(f"Bot {bot.id} has no matching knowledge, sending fallback message")

        # Step 5: Logging (never fatal)
        try:
            log = self.turn_log.record_exchange(
                bot, conversation_id, messages, reply, query_embedding=query_embedding
            )
            cid, log_result = log.conversation_id, log.result
        except Exception as e:
            logger.warning(f"Conversation logging failed for bot {bot.id}: {e}")
            cid, log_result = None, WriteResult.FAILED

        total_time = time.time() - start_time
        logger.info(
            f"Chat for bot {bot.slug} completed in {total_time:.2f}s "
            f"(retrieval: {retrieval_time:.2f}s, chunks: {len(results)}, log: {log_result.value})"
        )

        return ChatReply(
            reply=reply,
            conversation_id=cid,
            log_result=log_result,
            sources=results,
            metadata={
                "model": model,
                "chunks_found": len(results),
                "retrieval_time": retrieval_time,
                "total_time": total_time,
            },
        )

    def answer_question(
        self,
        user_id: str,
        chatbot_id: str,
        question: str,
        conversation_id: Optional[str] = None,
    ) -> RAGResponse:
        """
        Answer a question from a bot's knowledge and remembered turns.

        The question and answer are saved to memory afterwards; a failed
        memory write does not fail the request.

        Raises:
            EmbeddingError: If the question cannot be embedded
            ConfigurationError / UpstreamError: If the completion call fails
        """
        start_time = time.time()

        bot = self.bots.get(chatbot_id)
        if bot is not None and (bot.owner_id != user_id or bot.is_deleted):
            bot = None

        embedding = self.embedding_service.embed_query(question)

        top = self.knowledge_store.search(
            embedding, user_id, chatbot_id,
            top_k=self.retrieval.top_k,
            threshold=self.retrieval.similarity_threshold,
        )

        memory: List[MemoryEntry] = []
        try:
            memory = self.turn_log.similar(embedding, user_id, chatbot_id, conversation_id)
        except Exception as e:
            logger.warning(f"Memory retrieval failed for bot {chatbot_id}: {e}")

        memory_context = format_turns(sorted(memory, key=lambda m: m.created_at))
        messages = [
            {"role": "system", "content": KNOWLEDGE_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": build_knowledge_user_prompt(question, format_knowledge(top), memory_context),
            },
        ]

        response = self.router.complete(
            model=bot.model if bot else self.llm.knowledge_model,
            messages=messages,
            temperature=bot.temperature if bot else self.llm.knowledge_temperature,
            provider=bot.provider.value if bot and bot.provider else None,
        )
        answer = response.content

        self.turn_log.remember("user", question, user_id, chatbot_id, conversation_id, embedding=embedding)
        self.turn_log.remember("assistant", answer, user_id, chatbot_id, conversation_id)

        return RAGResponse(
            answer=answer,
            top=top,
            metadata={
                "model": response.model,
                "memory_used": len(memory),
                "total_time": time.time() - start_time,
            },
        )

    def ground(
        self,
        user_id: str,
        chatbot_id: str,
        question: str,
        conversation_id: Optional[str] = None,
        top_n: Optional[int] = None,
    ) -> GroundingResult:
        """
        Build a grounding context with the strict retrieval variant.

        Uses the strict similarity threshold, 1 to 5 chunks (3 by default)
        and the last messages of the conversation in chronological order.
        """
        top_k = max(1, min(self.retrieval.strict_max_top_k, top_n or 3))

        embedding = self.embedding_service.embed_query(question)
        top = self.knowledge_store.search(
            embedding, user_id, chatbot_id,
            top_k=top_k,
            threshold=self.retrieval.strict_threshold,
        )

        recent = []
        try:
            recent = self.turn_log.recent(conversation_id)
        except Exception as e:
            logger.warning(f"Recent messages unavailable for {conversation_id}: {e}")

        total_chunks = 0
        try:
            total_chunks = self.knowledge_store.count(user_id, chatbot_id)
        except Exception as e:
            logger.warning(f"Chunk count unavailable for bot {chatbot_id}: {e}")

        context = assemble_context(top, recent, self.retrieval.max_context_chars)
        return GroundingResult(context=context, top=top, total_chunks=total_chunks)

    def preview(self, draft: BotDraft, messages: List[Dict[str, Any]]) -> str:
        """
        Run an unsaved bot configuration.

        Returns a mock reply when the selected provider has no credentials,
        so the builder works without API keys. Nothing is logged.
        """
        if not self.router.is_available(draft.model):
            logger.info("Preview provider not configured, returning mock reply")
            return MOCK_PREVIEW_TEMPLATE.format(name=draft.name, last=last_user_text(messages))

        llm_messages = [
            {"role": "system", "content": build_system_prompt(draft.name, draft.directive, draft.knowledge_base)}
        ]
        llm_messages.extend(messages)

        response = self.router.complete(
            model=draft.model,
            messages=llm_messages,
            temperature=draft.temperature,
        )
        return response.content
