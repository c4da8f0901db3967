"""
Bot Configuration Models

Pydantic schemas for chatbot configuration, validated at the API boundary.

Design Rationale:
- Rules are a typed set of known feature flags plus an explicit key/value
  extension list; an unknown flag name is a validation error instead of a
  silently ignored typo
- The LLM provider is stored next to the model and resolved when the bot is
  saved
- Patches (BotUpdate) only carry the fields a builder form changed
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from botforge.llm_service import Provider, resolve_provider

SUPPORTED_MODELS = (
    "gpt-4o-mini",
    "gpt-4o",
    "gpt-5",
    "gpt-5-mini",
    "gpt-5-nano",
    "deepseek-reasoner",
)

ChatModel = Literal[
    "gpt-4o-mini",
    "gpt-4o",
    "gpt-5",
    "gpt-5-mini",
    "gpt-5-nano",
    "deepseek-reasoner",
]

DEFAULT_GREETING = "How can I help you today?"
DEFAULT_BOT_DIRECTIVE = "You are a helpful assistant. Answer clearly and concisely."
DEFAULT_STARTER_QUESTIONS = [
    "What can you do?",
    "Help me write a message",
    "Explain this concept simply",
]
DEFAULT_TAGLINE = "Ask your AI Teacher…"
DEFAULT_BRAND_COLOR = "#3B82F6"
HEX_COLOR_PATTERN = r"^#([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$"
SLUG_PATTERN = r"^[a-z0-9-]+$"


class RuleSettings(BaseModel):
    """Known feature toggles for a bot."""

    model_config = ConfigDict(extra="forbid")

    auto_suggest: bool = True
    wait_for_reply: bool = False
    knowledge_fallback_mode: Literal["ai", "message"] = "ai"
    knowledge_fallback_message: str = ""


class RuleEntry(BaseModel):
    """Free-form key/value pair owned by the bot author."""

    model_config = ConfigDict(extra="forbid")

    key: str = ""
    value: str = ""


class BotRules(BaseModel):
    """
    Feature flags plus an extension map.

    Example:
        rules = BotRules.model_validate({
            "settings": {"knowledge_fallback_mode": "message",
                         "knowledge_fallback_message": "Please contact support."},
            "kv": [{"key": "tone", "value": "formal"}],
        })
        rules.get("tone")  # "formal"
    """

    model_config = ConfigDict(extra="forbid")

    settings: RuleSettings = Field(default_factory=RuleSettings)
    kv: List[RuleEntry] = Field(default_factory=list)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Return the value of an extension key."""
        for entry in self.kv:
            if entry.key == key:
                return entry.value
        return default

    @property
    def uses_fallback_message(self) -> bool:
        return self.settings.knowledge_fallback_mode == "message"


class Integrations(BaseModel):
    model_config = ConfigDict(extra="forbid")

    google_drive: bool = False
    slack: bool = False
    notion: bool = False


class BotConfig(BaseModel):
    """
    One tenant's chatbot, as stored in the ``chatbots`` collection.

    Attributes:
        id: Bot id (stored as ``_id``)
        owner_id: Owning account
        slug: Public URL handle, unique among non-deleted bots
        model: Model id; builder input is limited to ChatModel, stored rows are not
        provider: LLM backend, resolved from ``model`` at save time
        rules: Feature flags and key/value extensions
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    owner_id: str
    slug: str
    name: str
    directive: str = DEFAULT_BOT_DIRECTIVE
    greeting: str = DEFAULT_GREETING
    knowledge_base: str = ""
    starter_questions: List[str] = Field(default_factory=lambda: list(DEFAULT_STARTER_QUESTIONS))
    tagline: str = DEFAULT_TAGLINE
    model: str = "gpt-4o-mini"  # Stored rows may carry legacy or gateway ids
    provider: Optional[Provider] = None
    temperature: float = Field(0.6, ge=0, le=1)
    is_public: bool = False
    is_deleted: bool = False
    theme_template: Literal["default", "modern"] = "default"
    brand_color: str = DEFAULT_BRAND_COLOR
    avatar_url: Optional[str] = None
    bubble_style: Literal["rounded", "square"] = "rounded"
    typing_indicator: bool = True
    integrations: Integrations = Field(default_factory=Integrations)
    rules: BotRules = Field(default_factory=BotRules)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _fill_provider(self) -> "BotConfig":
        # Rows saved before providers were stored
        if self.provider is None:
            self.provider = resolve_provider(self.model)
        return self

    def to_document(self) -> Dict[str, Any]:
        """Convert to a store document (``id`` becomes ``_id``)."""
        data = self.model_dump(mode="python")
        data["_id"] = data.pop("id")
        data["provider"] = self.provider.value if self.provider else None
        return data

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "BotConfig":
        """Create from a store document."""
        data = dict(document)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)

    def to_public_dict(self) -> Dict[str, Any]:
        """Fields the public chat page needs."""
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "greeting": self.greeting,
            "starter_questions": self.starter_questions,
            "tagline": self.tagline,
            "brand_color": self.brand_color,
            "avatar_url": self.avatar_url,
            "bubble_style": self.bubble_style,
            "typing_indicator": self.typing_indicator,
            "theme_template": self.theme_template,
        }


class BotUpdate(BaseModel):
    """Autosave patch from the builder; only set fields are applied."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=3, max_length=60)
    slug: Optional[str] = Field(None, min_length=3, pattern=SLUG_PATTERN)
    directive: Optional[str] = None
    greeting: Optional[str] = Field(None, min_length=1, max_length=160)
    knowledge_base: Optional[str] = None
    starter_questions: Optional[List[str]] = Field(None, max_length=6)
    tagline: Optional[str] = None
    model: Optional[ChatModel] = None
    temperature: Optional[float] = Field(None, ge=0, le=1)
    is_public: Optional[bool] = None
    theme_template: Optional[Literal["default", "modern"]] = None
    brand_color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    avatar_url: Optional[str] = None
    bubble_style: Optional[Literal["rounded", "square"]] = None
    typing_indicator: Optional[bool] = None
    integrations: Optional[Integrations] = None
    rules: Optional[BotRules] = None

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly set by the caller, ready for a ``$set``."""
        return self.model_dump(mode="python", exclude_unset=True)


class BotDraft(BaseModel):
    """Unsaved bot settings used by the builder's live preview."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    directive: str = ""
    knowledge_base: str = ""
    model: ChatModel = "gpt-4o-mini"
    temperature: float = Field(0.6, ge=0, le=1)
