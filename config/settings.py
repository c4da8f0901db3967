"""
Configuration settings for BotForge.

This module handles all configuration management using environment variables.
No hardcoded secrets - everything is configurable via .env file.
"""

import os
from dataclasses import dataclass, field
from typing import List, Literal, Optional
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    """Read a boolean flag ("1", "true", "yes", "on") from the environment."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _optional_float(value: Optional[str]) -> Optional[float]:
    """Parse an optional numeric setting; unset or blank means None."""
    if value is None or not value.strip():
        return None
    return float(value)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding models."""

    provider: Literal["local", "openai"] = "openai"
    local_model: str = "all-MiniLM-L6-v2"
    openai_model: str = "text-embedding-3-small"
    openai_api_key: Optional[str] = None

    # Inputs per embeddings request
    batch_size: int = 64

    # Embedding dimensions (depends on model)
    # all-MiniLM-L6-v2: 384
    # text-embedding-3-small: 1536
    @property
    def dimension(self) -> int:
        """Return embedding dimension based on selected model."""
        if self.provider == "local":
            model_dimensions = {
                "all-MiniLM-L6-v2": 384,
                "all-mpnet-base-v2": 768,
                "paraphrase-MiniLM-L6-v2": 384,
            }
            return model_dimensions.get(self.local_model, 384)
        else:
            model_dimensions = {
                "text-embedding-3-small": 1536,
                "text-embedding-3-large": 3072,
                "text-embedding-ada-002": 1536,
            }
            return model_dimensions.get(self.openai_model, 1536)


@dataclass
class LLMConfig:
    """Configuration for LLM providers."""

    # OpenAI settings
    openai_api_key: Optional[str] = None

    # DeepSeek settings
    deepseek_api_key: Optional[str] = None
    deepseek_base_url: str = "https://api.deepseek.com"

    # OpenRouter gateway settings
    gateway_api_key: Optional[str] = None
    gateway_priority: bool = False
    gateway_base_url: str = "https://openrouter.ai/api/v1"
    gateway_referer: str = "http://localhost:3000"
    gateway_title: str = "BotForge"

    # Defaults for the public chat runtime
    default_model: str = "gpt-4o-mini"
    default_temperature: float = 0.6

    # Defaults for the knowledge query endpoint
    knowledge_model: str = "gpt-4o"
    knowledge_temperature: float = 0.2

    # Forced when the last user turn carries images
    vision_model: str = "gpt-4o"
    max_images: int = 3

    # Seconds, for the direct HTTP providers
    request_timeout: float = 60.0

    @property
    def gateway_enabled(self) -> bool:
        """Gateway routing needs both a key and the priority flag."""
        return bool(self.gateway_api_key) and self.gateway_priority


@dataclass
class DatabaseConfig:
    """Configuration for the document/vector store."""

    provider: Literal["mongodb", "memory"] = "mongodb"

    # MongoDB settings
    mongodb_uri: Optional[str] = None
    mongodb_service_uri: Optional[str] = None
    mongodb_database: str = "botforge"

    # Collections
    chatbots_collection: str = "chatbots"
    knowledge_collection: str = "knowledge_chunks"
    conversations_collection: str = "conversations"
    messages_collection: str = "messages"
    memory_collection: str = "chat_memory"

    # Atlas vector search indexes
    knowledge_vector_index: str = "knowledge_vector_index"
    memory_vector_index: str = "memory_vector_index"


@dataclass
class ChunkingConfig:
    """Configuration for document chunking."""

    min_words: int = 300  # Advisory floor before a paragraph boundary flush
    max_words: int = 500  # Flush as soon as a chunk reaches this size
    insert_batch_size: int = 500  # Rows per knowledge insert


@dataclass
class RetrievalConfig:
    """Configuration for retrieval settings."""

    top_k: int = 3  # Knowledge chunks per question
    similarity_threshold: Optional[float] = None  # None: plain top-k, no cutoff
    strict_threshold: float = 0.3  # Grounding variant
    strict_max_top_k: int = 5
    candidate_limit: int = 1000  # Rows fetched by the in-process fallback
    max_context_chars: int = 8000


@dataclass
class MemoryConfig:
    """Configuration for the long-term chat memory."""

    mirror_chat_turns: bool = False  # Also embed public chat turns
    top_similar: int = 5
    recent_window: int = 12


@dataclass
class AuthConfig:
    """Configuration for owner authentication."""

    dev_no_auth: bool = False
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    dummy_owner_id: str = "00000000-0000-0000-0000-000000000000"


@dataclass
class ServerConfig:
    """Configuration for the HTTP server."""

    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class Settings:
    """
    Main settings class that aggregates all configurations.

    Usage:
        settings = get_settings()
        print(settings.llm.default_model)
        print(settings.database.mongodb_database)
    """

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    # Paths
    project_root: Path = field(default_factory=lambda: Path(__file__).parent.parent)

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Create Settings instance from environment variables.

        This is the primary way to instantiate Settings.
        """
        embedding = EmbeddingConfig(
            provider=os.getenv("EMBEDDING_PROVIDER", "openai"),  # type: ignore
            local_model=os.getenv("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            openai_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            batch_size=int(os.getenv("EMBEDDING_BATCH_SIZE", "64")),
        )

        llm = LLMConfig(
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            deepseek_api_key=os.getenv("DEEPSEEK_API_KEY"),
            deepseek_base_url=os.getenv("DEEPSEEK_BASE_URL", "https://api.deepseek.com"),
            gateway_api_key=os.getenv("OPENROUTER_API_KEY"),
            gateway_priority=_env_flag("GATEWAY_PRIORITY"),
            gateway_base_url=os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
            gateway_referer=os.getenv("OPENROUTER_REFERER", "http://localhost:3000"),
            gateway_title=os.getenv("OPENROUTER_TITLE", "BotForge"),
            default_model=os.getenv("DEFAULT_CHAT_MODEL", "gpt-4o-mini"),
            default_temperature=float(os.getenv("DEFAULT_TEMPERATURE", "0.6")),
            knowledge_model=os.getenv("KNOWLEDGE_MODEL", "gpt-4o"),
            knowledge_temperature=float(os.getenv("KNOWLEDGE_TEMPERATURE", "0.2")),
            vision_model=os.getenv("VISION_MODEL", "gpt-4o"),
            request_timeout=float(os.getenv("LLM_REQUEST_TIMEOUT", "60")),
        )

        database = DatabaseConfig(
            provider=os.getenv("DATABASE_PROVIDER", "mongodb"),  # type: ignore
            mongodb_uri=os.getenv("MONGODB_URI"),
            mongodb_service_uri=os.getenv("MONGODB_SERVICE_URI"),
            mongodb_database=os.getenv("MONGODB_DATABASE", "botforge"),
            knowledge_vector_index=os.getenv("KNOWLEDGE_VECTOR_INDEX", "knowledge_vector_index"),
            memory_vector_index=os.getenv("MEMORY_VECTOR_INDEX", "memory_vector_index"),
        )

        chunking = ChunkingConfig(
            min_words=int(os.getenv("CHUNK_MIN_WORDS", "300")),
            max_words=int(os.getenv("CHUNK_MAX_WORDS", "500")),
        )

        retrieval = RetrievalConfig(
            top_k=int(os.getenv("TOP_K_RESULTS", "3")),
            similarity_threshold=_optional_float(os.getenv("SIMILARITY_THRESHOLD")),
            strict_threshold=float(os.getenv("STRICT_SIMILARITY_THRESHOLD", "0.3")),
            max_context_chars=int(os.getenv("MAX_CONTEXT_CHARS", "8000")),
        )

        memory = MemoryConfig(
            mirror_chat_turns=_env_flag("MEMORY_MIRROR_CHAT"),
            top_similar=int(os.getenv("MEMORY_TOP_SIMILAR", "5")),
            recent_window=int(os.getenv("MEMORY_RECENT_WINDOW", "12")),
        )

        auth = AuthConfig(
            dev_no_auth=_env_flag("DEV_NO_AUTH"),
            jwt_secret=os.getenv("AUTH_JWT_SECRET"),
        )

        origins = os.getenv("CORS_ORIGINS", "*")
        server = ServerConfig(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )

        return cls(
            embedding=embedding,
            llm=llm,
            database=database,
            chunking=chunking,
            retrieval=retrieval,
            memory=memory,
            auth=auth,
            server=server,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# Singleton pattern for settings
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the singleton Settings instance.

    Returns:
        Settings: The application settings loaded from environment.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment (useful for testing).

    Returns:
        Settings: Fresh settings instance.
    """
    global _settings
    load_dotenv(override=True)
    _settings = Settings.from_env()
    return _settings
