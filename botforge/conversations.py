"""
Conversation Persistence Module

Stores conversations and their messages for every bot.

Write Policy:
- Exchange logging never fails a chat request: every write goes through
  write_with_fallback (primary client, then elevated client) and the
  combined outcome is reported as SUCCESS, DEGRADED or FAILED
- A conversation is created lazily on the first message, titled from the
  first user message (60 characters max)

Operator Messages:
    Assistant messages written by a human operator carry an invisible
    ``<!--admin_manual-->`` prefix. Only those can be edited or deleted;
    model-generated messages are append-only.

Usage:
    store = ConversationStore(clients)
    log = store.log_exchange(bot, None, [{"role": "user", "content": "2+2?"}], "4")
    store.list_messages(log.conversation_id)  # user, then assistant
"""

import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.settings import get_settings, DatabaseConfig
from botforge.database import (
    ASCENDING,
    DESCENDING,
    BaseDatabase,
    DatabaseClients,
    WriteOutcome,
    WriteResult,
    write_with_fallback,
)
from botforge.errors import InvalidRequestError, NotFoundError
from botforge.models import BotConfig

logger = logging.getLogger(__name__)

ADMIN_MANUAL_MARKER = "<!--admin_manual-->"
MAX_TITLE_LENGTH = 60
DEFAULT_TITLE = "New Chat"
MAX_PAGE_SIZE = 100


@dataclass
class Conversation:
    """
    A chat thread scoped to one bot.

    Attributes:
        id: Conversation id
        chatbot_id: Owning bot
        title: Display title (60 characters max)
        created_at: Creation time (UTC)
        updated_at: Last activity, used for list ordering
    """

    id: str
    chatbot_id: str
    title: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chatbot_id": self.chatbot_id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(doc["_id"]),
            chatbot_id=doc["chatbot_id"],
            title=doc.get("title") or DEFAULT_TITLE,
            created_at=doc["created_at"],
            updated_at=doc.get("updated_at") or doc["created_at"],
        )


@dataclass
class Message:
    """
    One turn of a conversation.

    Attributes:
        id: Message id
        conversation_id: Owning conversation
        role: "user", "assistant" or "system"
        content: Message text (operator messages keep their marker prefix)
        created_at: Creation time (UTC)
    """

    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime

    @property
    def is_manual(self) -> bool:
        """True for operator-authored messages."""
        return self.content.startswith(ADMIN_MANUAL_MARKER)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        return cls(
            id=str(doc["_id"]),
            conversation_id=doc["conversation_id"],
            role=doc["role"],
            content=doc.get("content") or "",
            created_at=doc["created_at"],
        )

    def __str__(self) -> str:
        return f"{self.role}: {self.content}"


@dataclass
class ExchangeLog:
    """
    Result of logging one user/assistant exchange.

    conversation_id is None only when the conversation could not be created.
    """

    conversation_id: Optional[str]
    result: WriteResult


def make_title(messages: List[Dict[str, Any]], bot_name: str) -> str:
    """Title from the first user message, else "<bot name> chat", 60 chars max."""
    first_user = next(
        (m.get("content") for m in messages if m.get("role") == "user" and m.get("content")),
        None,
    )
    title = first_user if isinstance(first_user, str) else f"{bot_name} chat"
    return title.strip()[:MAX_TITLE_LENGTH] or DEFAULT_TITLE


class ConversationStore:
    """
    Data access for the ``conversations`` and ``messages`` collections.

    Example:
        store = ConversationStore(clients)
        conversation = store.create_conversation(bot.id)
        store.add_manual_message(conversation.id, "Hi, a human here.")
        [m.is_manual for m in store.list_messages(conversation.id)]  # [True]
    """

    def __init__(self, clients: DatabaseClients, config: Optional[DatabaseConfig] = None):
        """
        Initialize the store.

        Args:
            clients: Injected database clients
            config: Optional DatabaseConfig (collection names)
        """
        self.clients = clients
        self.config = config or get_settings().database
        self.conversations = self.config.conversations_collection
        self.messages = self.config.messages_collection

    # Exchange logging (best effort)

    def _message_document(self, conversation_id: str, role: str, content: str) -> Dict[str, Any]:
        return {
            "_id": str(uuid.uuid4()),
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "created_at": datetime.utcnow(),
            # BSON dates have millisecond precision; seq orders same-ms turns
            "seq": time.time_ns(),
        }

    def ensure_conversation(
        self,
        chatbot_id: str,
        conversation_id: Optional[str],
        title: str,
    ) -> WriteOutcome:
        """
        Return the conversation id to log into, creating it if needed.

        A supplied id that does not belong to this bot is not reused; a new
        conversation is created instead.

        Returns:
            WriteOutcome whose value is the conversation id
        """

        def operation(db: BaseDatabase) -> str:
            if conversation_id and db.find_one(
                self.conversations, {"_id": conversation_id, "chatbot_id": chatbot_id}
            ):
                return conversation_id

            if conversation_id:
                logger.warning(
                    f"Conversation {conversation_id} not found for bot {chatbot_id}, creating a new one"
                )

            now = datetime.utcnow()
            new_id = str(uuid.uuid4())
            db.insert_one(self.conversations, {
                "_id": new_id,
                "chatbot_id": chatbot_id,
                "title": title[:MAX_TITLE_LENGTH],
                "created_at": now,
                "updated_at": now,
            })
            return new_id

        return write_with_fallback(self.clients, operation, "ensure conversation")

    def append_message(self, conversation_id: str, role: str, content: str) -> WriteOutcome:
        document = self._message_document(conversation_id, role, content)
        return write_with_fallback(
            self.clients,
            lambda db: db.insert_one(self.messages, document)["_id"],
            f"insert {role} message",
        )

    def touch(self, conversation_id: str) -> WriteOutcome:
        """Bump updated_at so the conversation sorts first."""
        return write_with_fallback(
            self.clients,
            lambda db: db.update_one(
                self.conversations, {"_id": conversation_id}, {"updated_at": datetime.utcnow()}
            ),
            "touch conversation",
        )

    def log_exchange(
        self,
        bot: BotConfig,
        conversation_id: Optional[str],
        messages: List[Dict[str, Any]],
        reply: str,
    ) -> ExchangeLog:
        """
        Persist the latest user turn and the assistant reply.

        The last caller message is logged only if its role is "user".

        Args:
            bot: Bot the conversation belongs to
            conversation_id: Existing conversation id, or None to create one
            messages: Messages sent by the caller
            reply: Assistant reply

        Returns:
            ExchangeLog with the conversation id and combined outcome
        """
        ensured = self.ensure_conversation(bot.id, conversation_id, make_title(messages, bot.name))
        if not ensured.ok:
            logger.error(f"Exchange for bot {bot.id} not logged: conversation unavailable")
            return ExchangeLog(conversation_id=None, result=WriteResult.FAILED)

        cid = ensured.value
        result = ensured.result

        last = messages[-1] if messages else None
        if last and last.get("role") == "user" and isinstance(last.get("content"), str):
            result = result.combine(self.append_message(cid, "user", last["content"]).result)

        result = result.combine(self.append_message(cid, "assistant", reply).result)
        result = result.combine(self.touch(cid).result)

        if result is not WriteResult.SUCCESS:
            logger.warning(f"Exchange logged to {cid} with result {result.value}")

        return ExchangeLog(conversation_id=cid, result=result)

    # Conversation CRUD

    def find_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Load a conversation regardless of bot (for ownership checks)."""
        doc = self.clients.primary.find_one(self.conversations, {"_id": conversation_id})
        return Conversation.from_document(doc) if doc else None

    def get_conversation(self, chatbot_id: str, conversation_id: str) -> Conversation:
        """
        Raises:
            NotFoundError: If the conversation does not belong to the bot
        """
        doc = self.clients.primary.find_one(
            self.conversations, {"_id": conversation_id, "chatbot_id": chatbot_id}
        )
        if not doc:
            raise NotFoundError("Conversation not found")
        return Conversation.from_document(doc)

    def list_conversations(
        self,
        chatbot_id: str,
        page: int = 1,
        page_size: int = 20,
        query: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Page through a bot's conversations, most recently active first.

        Args:
            chatbot_id: Bot to list
            page: 1-indexed page number
            page_size: Items per page (capped at 100)
            query: Optional case-insensitive title search

        Returns:
            {"items": [...], "total": n, "page": p, "pageSize": s}
        """
        page = max(int(page or 1), 1)
        page_size = min(max(int(page_size or 20), 1), MAX_PAGE_SIZE)

        filter_dict: Dict[str, Any] = {"chatbot_id": chatbot_id}
        if query and query.strip():
            filter_dict["title"] = {"$regex": re.escape(query.strip()), "$options": "i"}

        db = self.clients.primary
        docs = db.find(
            self.conversations,
            filter_dict,
            sort=[("updated_at", DESCENDING)],
            limit=page_size,
            skip=(page - 1) * page_size,
        )

        return {
            "items": [Conversation.from_document(d).to_dict() for d in docs],
            "total": db.count(self.conversations, filter_dict),
            "page": page,
            "pageSize": page_size,
        }

    def create_conversation(self, chatbot_id: str, title: Optional[str] = None) -> Conversation:
        now = datetime.utcnow()
        title = (title or "").strip()[:MAX_TITLE_LENGTH] or DEFAULT_TITLE
        doc = {
            "_id": str(uuid.uuid4()),
            "chatbot_id": chatbot_id,
            "title": title,
            "created_at": now,
            "updated_at": now,
        }
        self.clients.primary.insert_one(self.conversations, doc)
        logger.info(f"Created conversation {doc['_id']} for bot {chatbot_id}")
        return Conversation.from_document(doc)

    def rename_conversation(self, chatbot_id: str, conversation_id: str, title: Optional[str]) -> Conversation:
        """
        Raises:
            InvalidRequestError: If the title is blank
            NotFoundError: If the conversation does not belong to the bot
        """
        title = (title or "").strip()
        if not title:
            raise InvalidRequestError("Title required")

        self.get_conversation(chatbot_id, conversation_id)
        self.clients.primary.update_one(
            self.conversations,
            {"_id": conversation_id},
            {"title": title[:MAX_TITLE_LENGTH], "updated_at": datetime.utcnow()},
        )
        return self.get_conversation(chatbot_id, conversation_id)

    def delete_conversation(self, chatbot_id: str, conversation_id: str) -> None:
        self.get_conversation(chatbot_id, conversation_id)
        db = self.clients.primary
        removed = db.delete_many(self.messages, {"conversation_id": conversation_id})
        db.delete_one(self.conversations, {"_id": conversation_id})
        logger.info(f"Deleted conversation {conversation_id} ({removed} messages)")

    # Messages

    def list_messages(self, conversation_id: str) -> List[Message]:
        """All messages of a conversation, oldest first."""
        docs = self.clients.primary.find(
            self.messages,
            {"conversation_id": conversation_id},
            sort=[("created_at", ASCENDING), ("seq", ASCENDING)],
        )
        return [Message.from_document(d) for d in docs]

    def recent_messages(self, conversation_id: str, limit: int = 12) -> List[Message]:
        """The last ``limit`` messages, returned oldest first."""
        docs = self.clients.primary.find(
            self.messages,
            {"conversation_id": conversation_id},
            sort=[("created_at", DESCENDING), ("seq", DESCENDING)],
            limit=limit,
        )
        return [Message.from_document(d) for d in reversed(docs)]

    def get_message(self, message_id: str) -> Message:
        doc = self.clients.primary.find_one(self.messages, {"_id": message_id})
        if not doc:
            raise NotFoundError("Not found")
        return Message.from_document(doc)

    def add_manual_message(self, conversation_id: str, content: Optional[str]) -> Message:
        """Insert an operator-authored assistant message."""
        content = (content or "").strip()
        if not content:
            raise InvalidRequestError("Content required")

        document = self._message_document(
            conversation_id, "assistant", f"{ADMIN_MANUAL_MARKER}\n{content}"
        )
        self.clients.primary.insert_one(self.messages, document)
        self.clients.primary.update_one(
            self.conversations, {"_id": conversation_id}, {"updated_at": datetime.utcnow()}
        )
        logger.info(f"Operator message {document['_id']} added to {conversation_id}")
        return Message.from_document(document)

    def edit_manual_message(self, message_id: str, content: Optional[str]) -> Message:
        """
        Replace the text of an operator message, keeping its marker.

        Raises:
            InvalidRequestError: If the message is model-generated or content is blank
        """
        message = self.get_message(message_id)
        if not message.is_manual:
            raise InvalidRequestError("Only admin-manual messages can be edited")

        content = (content or "").strip()
        if not content:
            raise InvalidRequestError("Content required")

        self.clients.primary.update_one(
            self.messages, {"_id": message_id}, {"content": f"{ADMIN_MANUAL_MARKER}\n{content}"}
        )
        return self.get_message(message_id)

    def delete_manual_message(self, message_id: str) -> None:
        """
        Raises:
            InvalidRequestError: If the message is model-generated
        """
        message = self.get_message(message_id)
        if not message.is_manual:
            raise InvalidRequestError("Only admin-manual messages can be deleted")

        self.clients.primary.delete_one(self.messages, {"_id": message_id})
        logger.info(f"Operator message {message_id} deleted")
