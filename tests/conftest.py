"""
Shared fixtures: in-memory store, deterministic embedder and a recording LLM provider.
"""

import hashlib
import re

import pytest

from config.settings import AuthConfig, DatabaseConfig, LLMConfig, Settings
from botforge.database import DatabaseClients, InMemoryDatabase
from botforge.llm_service import BaseLLMProvider, LLMResponse, LLMRouter, Provider
from botforge.models import BotUpdate
from botforge.services import build_services

STUB_DIMENSION = 32


def stub_vector(text, dimension=STUB_DIMENSION):
    """Bag-of-words vector with md5-hashed buckets (stable across runs)."""
    vector = [0.0] * dimension
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    return vector


class StubEmbeddingService:
    """Stands in for EmbeddingService without any model or network."""

    provider_name = "stub"
    model_name = "stub-embedder"

    def __init__(self, dimension=STUB_DIMENSION):
        self.dimension = dimension

    def embed_batch(self, texts):
        return [stub_vector(t, self.dimension) for t in texts]

    def embed_text(self, text):
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return stub_vector(text, self.dimension)

    def embed_query(self, query):
        return self.embed_text(query)


class FakeLLMProvider(BaseLLMProvider):
    """Records every completion request and answers with a fixed reply."""

    def __init__(self, reply="4", configured=True, provider=Provider.OPENAI):
        self.reply = reply
        self.configured = configured
        self.provider = provider
        self.calls = []

    @property
    def is_configured(self):
        return self.configured

    def complete(self, messages, model, temperature=0.6):
        self.calls.append({"messages": messages, "model": model, "temperature": temperature})
        return LLMResponse(content=self.reply, model=model, provider=self.provider)


@pytest.fixture
def settings():
    return Settings(
        llm=LLMConfig(openai_api_key="sk-test"),
        database=DatabaseConfig(provider="memory"),
        auth=AuthConfig(jwt_secret="test-secret"),
    )


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def clients(db):
    return DatabaseClients(primary=db)


@pytest.fixture
def embedder():
    return StubEmbeddingService()


@pytest.fixture
def fake_llm():
    return FakeLLMProvider()


@pytest.fixture
def router(settings, fake_llm):
    return LLMRouter(config=settings.llm, providers={Provider.OPENAI: fake_llm})


@pytest.fixture
def services(settings, clients, embedder, router):
    return build_services(settings=settings, clients=clients, embedding_service=embedder, router=router)


@pytest.fixture
def owner_id():
    return "owner-1"


@pytest.fixture
def public_bot(services, owner_id):
    bot = services.bots.create(owner_id, "Math Tutor")
    return services.bots.update(bot.id, owner_id, BotUpdate(is_public=True))


@pytest.fixture
def llm_factory():
    """Build extra FakeLLMProvider instances inside a test."""
    return FakeLLMProvider
