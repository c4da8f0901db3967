"""
HTTP API

FastAPI application exposing the chat runtime, knowledge endpoints and the
owner (builder/admin) endpoints.

Every error renders as ``{"error": message}`` with the status code carried by
the raised BotForgeError; request-body validation failures render as 400.

Usage:
    app = create_app()            # wires services from the environment
    app = create_app(services)    # explicit wiring (tests)
"""

import logging
from typing import Any, Dict, List, Literal, Optional

import openai
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from botforge.auth import resolve_owner
from botforge.chunker import decode_base64_document, detect_document_type, extract_text
from botforge.conversations import Conversation
from botforge.errors import (
    BotForgeError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    UnprocessableError,
    UnsupportedMediaTypeError,
)
from botforge.models import BotDraft, BotUpdate
from botforge.services import Services, build_services

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(..., min_length=1)
    conversationId: Optional[str] = None


class PreviewRequest(BaseModel):
    bot: BotDraft
    messages: List[ChatMessage] = Field(default_factory=list)


class ConversationTitle(BaseModel):
    title: Optional[str] = None


class KnowledgeQueryRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    chatbotId: str = Field(..., min_length=1)
    question: str = Field(..., min_length=1)
    conversationId: Optional[str] = None


class GroundRequest(BaseModel):
    """Either userId, chatbotId and question, or a public slug and a transcript."""

    userId: Optional[str] = None
    chatbotId: Optional[str] = None
    question: Optional[str] = None
    slug: Optional[str] = None
    transcript: Optional[str] = None
    conversationId: Optional[str] = None
    topN: Optional[int] = None


class KnowledgeSaveRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    chatbotId: str = Field(..., min_length=1)
    text: Optional[str] = None
    fileBase64: Optional[str] = None
    fileName: Optional[str] = None
    mimeType: Optional[str] = None


class DocumentRequest(BaseModel):
    fileBase64: str = Field(..., min_length=1)
    fileName: Optional[str] = None
    mimeType: Optional[str] = None


class BotCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)


class ManualMessageRequest(BaseModel):
    content: Optional[str] = None


def _messages(payload: List[ChatMessage]) -> List[Dict[str, Any]]:
    return [m.model_dump() for m in payload]


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Optional wired Services (default: build_services())

    Returns:
        FastAPI app
    """
    services = services or build_services()
    settings = services.settings

    app = FastAPI(
        title="BotForge API",
        description="Multi-tenant chatbot builder with a retrieval-augmented chat runtime",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error rendering

    @app.exception_handler(BotForgeError)
    async def handle_botforge_error(request: Request, exc: BotForgeError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        logger.info(f"Invalid payload for {request.url.path}: {exc.errors()[:3]}")
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    @app.exception_handler(openai.APIError)
    async def handle_openai_error(request: Request, exc: openai.APIError):
        status = getattr(exc, "status_code", None)
        logger.error(f"OpenAI call failed on {request.url.path} (status={status}): {exc}")
        message = f"OpenAI error {status}" if status else "OpenAI request failed"
        return JSONResponse(status_code=500, content={"error": message})

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} failed unexpectedly: {exc}")
        return JSONResponse(status_code=500, content={"error": "Server error"})

    # Dependencies

    def current_owner(authorization: Optional[str] = Header(None)) -> str:
        return resolve_owner(authorization, settings.auth)

    def owned_conversation(conversation_id: str, owner_id: str) -> Conversation:
        conversation = services.conversations.find_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError()
        bot = services.bots.get(conversation.chatbot_id)
        if bot is None:
            raise NotFoundError()
        if bot.owner_id != owner_id:
            raise ForbiddenError()
        return conversation

    @app.get("/health")
    def health():
        return {"status": "ok"}

    # Public runtime

    @app.get("/api/bots/{slug}")
    def get_public_bot(slug: str):
        return services.bots.get_public(slug).to_public_dict()

    @app.post("/api/bots/{slug}/chat")
    def chat(slug: str, payload: ChatRequest):
        result = services.orchestrator.chat(slug, _messages(payload.messages), payload.conversationId)
        return result.to_dict()

    @app.get("/api/bots/{slug}/conversations")
    def list_conversations(
        slug: str,
        page: int = Query(1, ge=1),
        pageSize: int = Query(20, ge=1),
        q: Optional[str] = None,
    ):
        bot = services.bots.get_public(slug)
        return services.conversations.list_conversations(bot.id, page, pageSize, q)

    @app.post("/api/bots/{slug}/conversations")
    def create_conversation(slug: str, payload: Optional[ConversationTitle] = None):
        bot = services.bots.get_public(slug)
        title = payload.title if payload else None
        return services.conversations.create_conversation(bot.id, title).to_dict()

    @app.patch("/api/bots/{slug}/conversations/{conversation_id}")
    def rename_conversation(slug: str, conversation_id: str, payload: ConversationTitle):
        bot = services.bots.get_public(slug)
        return services.conversations.rename_conversation(bot.id, conversation_id, payload.title).to_dict()

    @app.delete("/api/bots/{slug}/conversations/{conversation_id}")
    def delete_conversation(slug: str, conversation_id: str):
        bot = services.bots.get_public(slug)
        services.conversations.delete_conversation(bot.id, conversation_id)
        return {"ok": True}

    @app.get("/api/bots/{slug}/conversations/{conversation_id}/messages")
    def list_messages(slug: str, conversation_id: str):
        bot = services.bots.get_public(slug)
        services.conversations.get_conversation(bot.id, conversation_id)
        return [m.to_dict() for m in services.conversations.list_messages(conversation_id)]

    @app.post("/api/preview/chat")
    def preview_chat(payload: PreviewRequest):
        reply = services.orchestrator.preview(payload.bot, _messages(payload.messages))
        return {"reply": reply}

    @app.post("/api/knowledge/query")
    def knowledge_query(payload: KnowledgeQueryRequest):
        if not payload.question.strip():
            raise InvalidRequestError("Missing userId, chatbotId or question")
        result = services.orchestrator.answer_question(
            payload.userId, payload.chatbotId, payload.question.strip(), payload.conversationId
        )
        return result.to_dict()

    @app.post("/api/realtime/ground")
    def realtime_ground(payload: GroundRequest):
        user_id, chatbot_id = payload.userId, payload.chatbotId
        question = (payload.question or payload.transcript or "").strip()
        if payload.slug:
            bot = services.bots.get_public(payload.slug)
            user_id, chatbot_id = bot.owner_id, bot.id
        if not (user_id and chatbot_id and question):
            raise InvalidRequestError("Missing userId, chatbotId or question")
        result = services.orchestrator.ground(
            user_id,
            chatbot_id,
            question,
            payload.conversationId,
            payload.topN,
        )
        return result.to_dict()

    # Owner endpoints

    @app.get("/api/chatbots")
    def list_chatbots(owner_id: str = Depends(current_owner)):
        return [bot.model_dump(mode="json") for bot in services.bots.list_owned(owner_id)]

    @app.post("/api/chatbots")
    def create_chatbot(payload: BotCreateRequest, owner_id: str = Depends(current_owner)):
        return services.bots.create(owner_id, payload.name).model_dump(mode="json")

    @app.get("/api/chatbots/{bot_id}")
    def get_chatbot(bot_id: str, owner_id: str = Depends(current_owner)):
        return services.bots.get_owned(bot_id, owner_id).model_dump(mode="json")

    @app.patch("/api/chatbots/{bot_id}")
    def update_chatbot(bot_id: str, payload: BotUpdate, owner_id: str = Depends(current_owner)):
        return services.bots.update(bot_id, owner_id, payload).model_dump(mode="json")

    @app.delete("/api/chatbots/{bot_id}")
    def delete_chatbot(bot_id: str, hard: bool = False, owner_id: str = Depends(current_owner)):
        if hard:
            services.bots.hard_delete(bot_id, owner_id)
        else:
            services.bots.soft_delete(bot_id, owner_id)
        return {"ok": True}

    @app.post("/api/knowledge/save")
    def knowledge_save(payload: KnowledgeSaveRequest, owner_id: str = Depends(current_owner)):
        if payload.userId != owner_id:
            raise ForbiddenError()
        services.bots.get_owned(payload.chatbotId, owner_id)

        result = services.ingestor.ingest(
            payload.userId,
            payload.chatbotId,
            text=payload.text,
            file_base64=payload.fileBase64,
            file_name=payload.fileName,
            mime_type=payload.mimeType,
        )
        return result.to_dict()

    @app.post("/api/knowledge/upload")
    def knowledge_upload(payload: DocumentRequest, owner_id: str = Depends(current_owner)):
        if detect_document_type(payload.fileName, payload.mimeType) != ".pdf":
            raise UnsupportedMediaTypeError("Only PDF files are supported")

        data = decode_base64_document(payload.fileBase64)
        text = extract_text(data, payload.fileName, payload.mimeType)
        if not text:
            raise UnprocessableError("No text found in PDF")

        return {"ok": True, "text": text}

    @app.post("/api/extract")
    def extract(payload: DocumentRequest, owner_id: str = Depends(current_owner)):
        data = decode_base64_document(payload.fileBase64)
        return {"text": extract_text(data, payload.fileName, payload.mimeType)}

    @app.get("/api/admin/conversations")
    def admin_list_conversations(
        botId: str,
        page: int = Query(1, ge=1),
        pageSize: int = Query(20, ge=1),
        q: Optional[str] = None,
        owner_id: str = Depends(current_owner),
    ):
        bot = services.bots.get_owned(botId, owner_id)
        return services.conversations.list_conversations(bot.id, page, pageSize, q)

    @app.get("/api/admin/conversations/{conversation_id}/messages")
    def admin_list_messages(conversation_id: str, owner_id: str = Depends(current_owner)):
        owned_conversation(conversation_id, owner_id)
        return [m.to_dict() for m in services.conversations.list_messages(conversation_id)]

    @app.post("/api/admin/conversations/{conversation_id}/messages")
    def admin_add_message(
        conversation_id: str,
        payload: ManualMessageRequest,
        owner_id: str = Depends(current_owner),
    ):
        owned_conversation(conversation_id, owner_id)
        return services.conversations.add_manual_message(conversation_id, payload.content).to_dict()

    @app.patch("/api/admin/messages/{message_id}")
    def admin_edit_message(
        message_id: str,
        payload: ManualMessageRequest,
        owner_id: str = Depends(current_owner),
    ):
        message = services.conversations.get_message(message_id)
        owned_conversation(message.conversation_id, owner_id)
        return services.conversations.edit_manual_message(message_id, payload.content).to_dict()

    @app.delete("/api/admin/messages/{message_id}")
    def admin_delete_message(message_id: str, owner_id: str = Depends(current_owner)):
        message = services.conversations.get_message(message_id)
        owned_conversation(message.conversation_id, owner_id)
        services.conversations.delete_manual_message(message_id)
        return {"ok": True}

    logger.info("BotForge API created")
    return app
