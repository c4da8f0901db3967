"""
Chatbot Repository

Create, read, patch and delete bot configurations.

Slugs:
    A slug is derived from the bot name (lowercase, runs of anything other
    than a-z/0-9 collapsed to "-", trimmed). While the slug is used by another
    non-deleted bot, a random 4-character [a-z0-9] suffix is appended.
    An empty slug becomes "bot-<suffix>".

Deletion:
    Two behaviors exist and both are kept: soft_delete (flag, the builder's
    path; knowledge and history stay) and hard_delete (row plus knowledge,
    conversations, messages and memory). The API uses soft delete unless
    the caller explicitly asks for the hard delete.
"""

import logging
import random
import re
import string
import uuid
from datetime import datetime
from typing import List, Optional

from config.settings import get_settings, DatabaseConfig, AuthConfig
from botforge.database import DatabaseClients, DESCENDING
from botforge.errors import InvalidRequestError, NotFoundError, SlugTakenError
from botforge.llm_service import resolve_provider
from botforge.models import BotConfig, BotUpdate

logger = logging.getLogger(__name__)

SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
MAX_SLUG_ATTEMPTS = 50


def slugify(value: str) -> str:
    """Lowercase and collapse every non-alphanumeric run to a single dash."""
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower())
    return slug.strip("-")


def random_suffix(length: int = 4) -> str:
    return "".join(random.choice(SUFFIX_ALPHABET) for _ in range(length))


class BotRepository:
    """
    Data access for the ``chatbots`` collection.

    Example:
        bots = BotRepository(clients)
        bot = bots.create(owner_id, "Math Tutor")
        bot = bots.update(bot.id, owner_id, BotUpdate(is_public=True))
        bots.get_public(bot.slug)
    """

    def __init__(
        self,
        clients: DatabaseClients,
        config: Optional[DatabaseConfig] = None,
        auth: Optional[AuthConfig] = None,
    ):
        """
        Initialize the repository.

        Args:
            clients: Injected database clients
            config: Optional DatabaseConfig (collection names)
            auth: Optional AuthConfig (dev mode lookups)
        """
        settings = get_settings()
        self.clients = clients
        self.config = config or settings.database
        self.auth = auth or settings.auth
        self.collection = self.config.chatbots_collection

    def _slug_taken(self, slug: str, exclude_id: Optional[str] = None) -> bool:
        query = {"slug": slug, "is_deleted": {"$ne": True}}
        if exclude_id:
            query["_id"] = {"$ne": exclude_id}
        return self.clients.primary.count(self.collection, query) > 0

    def unique_slug(self, name: str) -> str:
        """Return a slug for name that no non-deleted bot uses."""
        base = slugify(name)
        candidate = base or f"bot-{random_suffix()}"

        attempts = 0
        while self._slug_taken(candidate):
            attempts += 1
            if attempts > MAX_SLUG_ATTEMPTS:
                raise InvalidRequestError("Could not generate a unique slug")
            candidate = f"{base or 'bot'}-{random_suffix()}"

        return candidate

    def create(self, owner_id: str, name: str, **fields) -> BotConfig:
        """
        Create a bot with the builder defaults.

        Args:
            owner_id: Owning account
            name: Display name (also the slug source)
            **fields: Optional overrides of other BotConfig fields

        Returns:
            The stored BotConfig
        """
        name = (name or "").strip()
        if not name:
            raise InvalidRequestError("Name required")

        now = datetime.utcnow()
        bot = BotConfig(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            slug=self.unique_slug(name),
            name=name,
            created_at=now,
            updated_at=now,
            **fields,
        )
        bot.provider = resolve_provider(bot.model)

        self.clients.primary.insert_one(self.collection, bot.to_document())
        logger.info(f"Created bot {bot.id} (slug={bot.slug}) for owner {owner_id}")
        return bot

    def get(self, bot_id: str) -> Optional[BotConfig]:
        doc = self.clients.primary.find_one(self.collection, {"_id": bot_id})
        return BotConfig.from_document(doc) if doc else None

    def get_owned(self, bot_id: str, owner_id: str) -> BotConfig:
        """
        Load a non-deleted bot owned by owner_id.

        Raises:
            NotFoundError: If the bot is missing, deleted or owned by someone else
        """
        doc = self.clients.primary.find_one(
            self.collection,
            {"_id": bot_id, "owner_id": owner_id, "is_deleted": {"$ne": True}},
        )
        if not doc:
            raise NotFoundError("Bot not found")
        return BotConfig.from_document(doc)

    def list_owned(self, owner_id: str) -> List[BotConfig]:
        docs = self.clients.primary.find(
            self.collection,
            {"owner_id": owner_id, "is_deleted": {"$ne": True}},
            sort=[("updated_at", DESCENDING)],
        )
        return [BotConfig.from_document(d) for d in docs]

    def get_public(self, slug: str) -> BotConfig:
        """
        Load a bot for the public runtime.

        Only public, non-deleted bots are served, except in DEV_NO_AUTH mode
        where any bot with the slug is.

        Raises:
            NotFoundError: If no servable bot has this slug
        """
        query = {"slug": slug}
        if not self.auth.dev_no_auth:
            query["is_public"] = True
            query["is_deleted"] = {"$ne": True}

        doc = self.clients.primary.find_one(self.collection, query)
        if not doc:
            raise NotFoundError("Bot not found")
        return BotConfig.from_document(doc)

    def update(self, bot_id: str, owner_id: str, patch: BotUpdate) -> BotConfig:
        """
        Apply a builder patch.

        Raises:
            NotFoundError: If the bot is not owned by owner_id
            SlugTakenError: If the new slug belongs to another live bot
        """
        current = self.get_owned(bot_id, owner_id)
        changes = patch.changes()

        if "slug" in changes and changes["slug"] != current.slug:
            if self._slug_taken(changes["slug"], exclude_id=bot_id):
                raise SlugTakenError()

        if "model" in changes:
            changes["provider"] = resolve_provider(changes["model"]).value

        changes["updated_at"] = datetime.utcnow()
        self.clients.primary.update_one(self.collection, {"_id": bot_id}, changes)

        logger.info(f"Updated bot {bot_id}: {sorted(k for k in changes if k != 'updated_at')}")
        return self.get_owned(bot_id, owner_id)

    def soft_delete(self, bot_id: str, owner_id: str) -> None:
        self.get_owned(bot_id, owner_id)
        self.clients.primary.update_one(
            self.collection,
            {"_id": bot_id},
            {"is_deleted": True, "updated_at": datetime.utcnow()},
        )
        logger.info(f"Soft-deleted bot {bot_id}")

    def hard_delete(self, bot_id: str, owner_id: str) -> None:
        """Delete the bot row and every row that belongs to it."""
        self.get_owned(bot_id, owner_id)
        db = self.clients.primary

        conversation_ids = [
            c["_id"] for c in db.find(self.config.conversations_collection, {"chatbot_id": bot_id})
        ]
        if conversation_ids:
            db.delete_many(self.config.messages_collection, {"conversation_id": {"$in": conversation_ids}})
        db.delete_many(self.config.conversations_collection, {"chatbot_id": bot_id})
        db.delete_many(self.config.knowledge_collection, {"chatbot_id": bot_id})
        db.delete_many(self.config.memory_collection, {"chatbot_id": bot_id})
        db.delete_one(self.collection, {"_id": bot_id})

        logger.info(f"Hard-deleted bot {bot_id} and {len(conversation_ids)} conversations")
