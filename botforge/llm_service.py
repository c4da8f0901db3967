"""
LLM Service Module

Provider routing for chat completions:
- OpenAI: official SDK, the default path
- DeepSeek: direct HTTP to the chat-completions endpoint (bearer token)
- Gateway: OpenRouter, with vendor-namespaced model ids and routing headers

Design Rationale:
- The provider is an explicit enum stored on the bot, resolved once when the
  bot is saved (resolve_provider), not re-derived on every request
- Gateway routing is an environment decision: it needs both a key and the
  GATEWAY_PRIORITY flag, and never captures DeepSeek models
- Every path reads choices[0].message.content; a missing path is "" rather
  than an error
- A non-2xx status from a direct HTTP path raises UpstreamError carrying
  the status; nothing is retried

Multimodal:
    When the last user turn contains markdown images or base64 data URIs,
    its content becomes [text, up to 3 image parts] and the vision model is
    forced, overriding the bot's model and provider.

Usage:
    router = LLMRouter()
    response = router.complete(
        model="gpt-4o-mini",
        messages=[{"role": "system", "content": "..."}, {"role": "user", "content": "Hi"}],
        temperature=0.6,
    )
    print(response.content)
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import requests

from config.settings import get_settings, LLMConfig
from botforge.errors import ConfigurationError, UpstreamError

# Configure logging
logger = logging.getLogger(__name__)

MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\(\s*(\S+?)(?:\s+\"[^\"]*\")?\s*\)")
DATA_URI_IMAGE = re.compile(r"data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=]+")

# Short model name prefix -> gateway vendor namespace
GATEWAY_VENDOR_PREFIXES = [
    ("gpt-", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("claude", "anthropic"),
    ("gemini", "google"),
    ("deepseek", "deepseek"),
    ("mistral", "mistralai"),
    ("mixtral", "mistralai"),
    ("llama", "meta-llama"),
]


class Provider(str, Enum):
    """LLM backend a bot's completions are sent to."""

    OPENAI = "openai"
    DEEPSEEK = "deepseek"
    GATEWAY = "gateway"


def resolve_provider(model: str) -> Provider:
    """
    Resolve the provider for a model id.

    Called when a bot is saved; the result is stored with the bot.
    """
    if (model or "").lower().startswith("deepseek"):
        return Provider.DEEPSEEK
    return Provider.OPENAI


def to_gateway_model(model: str) -> str:
    """Map a short model id to the gateway's vendor-namespaced form."""
    if "/" in model:
        return model
    lowered = model.lower()
    for prefix, vendor in GATEWAY_VENDOR_PREFIXES:
        if lowered.startswith(prefix):
            return f"{vendor}/{model}"
    return model


@dataclass
class LLMResponse:
    """
    Standardized response from LLM providers.

    Attributes:
        content: The generated text response ("" when the provider sent none)
        model: Model name used for generation
        provider: Provider that served the request
        usage: Token usage statistics (if available)
        finish_reason: Why generation stopped
    """
    content: str
    model: str
    provider: Provider = Provider.OPENAI
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None

    def __str__(self) -> str:
        return self.content


def extract_images(content: str) -> Tuple[str, List[str]]:
    """
    Pull image references out of a message.

    Finds markdown images (``![alt](url)``) and bare base64 data URIs.

    Returns:
        (remaining text, image urls in order of appearance)
    """
    images: List[str] = []

    def _take_markdown(match):
        images.append(match.group(1))
        return ""

    text = MARKDOWN_IMAGE.sub(_take_markdown, content or "")

    def _take_data_uri(match):
        images.append(match.group(0))
        return ""

    text = DATA_URI_IMAGE.sub(_take_data_uri, text)
    return text.strip(), images


def build_multimodal_content(text: str, images: List[str], max_images: int = 3) -> List[Dict[str, Any]]:
    """Build the [text, image_url...] content parts for a vision request."""
    parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    for url in images[:max_images]:
        parts.append({"type": "image_url", "image_url": {"url": url}})
    return parts


def prepare_vision_messages(
    messages: List[Dict[str, Any]],
    max_images: int = 3,
) -> Tuple[List[Dict[str, Any]], bool]:
    """
    Restructure the last user turn if it carries images.

    Returns:
        (messages to send, whether images were found)
    """
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.get("role") != "user":
            continue

        content = message.get("content")
        if not isinstance(content, str):
            return messages, False

        text, images = extract_images(content)
        if not images:
            return messages, False

        updated = list(messages)
        updated[index] = {
            **message,
            "content": build_multimodal_content(text, images, max_images),
        }
        logger.info(f"Last user turn carries {len(images)} image(s), using vision request")
        return updated, True

    return messages, False


def _content_from_payload(data: Any) -> str:
    """Read choices[0].message.content from a JSON payload, "" if absent."""
    try:
        return data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError):
        return ""


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    All providers must implement:
    - complete: Send a chat-completion request for a message list
    - is_configured: Whether credentials are available
    """

    provider: Provider

    @abstractmethod
    def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        temperature: float = 0.6,
    ) -> LLMResponse:
        """
        Generate a reply for a message list.

        Args:
            messages: Chat messages (system, history, latest user turn)
            model: Model id in this provider's naming
            temperature: Sampling temperature

        Returns:
            LLMResponse object
        """
        pass

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Return True if the provider has credentials."""
        pass


class OpenAIProvider(BaseLLMProvider):
    """
    OpenAI provider using the official SDK.

    SDK errors propagate unchanged to the caller.
    """

    provider = Provider.OPENAI

    def __init__(self, api_key: Optional[str] = None):
        """
        Initialize OpenAI provider.

        Args:
            api_key: OpenAI API key
        """
        self._api_key = api_key
        self._client = None

    def _get_client(self):
        """Get or create OpenAI client."""
        if self._client is None:
            from openai import OpenAI

            if not self._api_key:
                raise ConfigurationError("Server missing OpenAI API key.")

            self._client = OpenAI(api_key=self._api_key)
            logger.info("OpenAI client initialized")
        return self._client

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        temperature: float = 0.6,
    ) -> LLMResponse:
        """Generate response using OpenAI."""
        client = self._get_client()

        response = client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
        )

        content = ""
        finish_reason = None
        if response.choices:
            choice = response.choices[0]
            content = (choice.message.content if choice.message else None) or ""
            finish_reason = choice.finish_reason

        usage = None
        if response.usage is not None:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=content,
            model=response.model or model,
            provider=self.provider,
            usage=usage,
            finish_reason=finish_reason,
        )


class HTTPChatProvider(BaseLLMProvider):
    """
    Base for providers called over plain HTTP with an OpenAI-shaped API.

    Subclasses set the endpoint, display name and extra headers.
    """

    display_name = "LLM"
    missing_key_message = "Server missing API key."

    def __init__(self, api_key: Optional[str], base_url: str, timeout: float = 60.0):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/chat/completions"

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        temperature: float = 0.6,
    ) -> LLMResponse:
        """POST the completion request and read the first choice."""
        if not self._api_key:
            raise ConfigurationError(self.missing_key_message)

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }

        try:
            response = requests.post(
                self.endpoint,
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error(f"{self.display_name} request failed: {e}")
            raise UpstreamError(f"{self.display_name} request failed")

        if not response.ok:
            logger.error(
                f"{self.display_name} returned {response.status_code}: {response.text[:200]}"
            )
            raise UpstreamError(
                f"{self.display_name} error {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = {}

        choices = data.get("choices") if isinstance(data, dict) else None
        finish_reason = None
        if choices and isinstance(choices[0], dict):
            finish_reason = choices[0].get("finish_reason")

        return LLMResponse(
            content=_content_from_payload(data),
            model=(data.get("model") if isinstance(data, dict) else None) or model,
            provider=self.provider,
            usage=data.get("usage") if isinstance(data, dict) else None,
            finish_reason=finish_reason,
        )


class DeepSeekProvider(HTTPChatProvider):
    """DeepSeek chat completions (reasoning-focused models)."""

    provider = Provider.DEEPSEEK
    display_name = "DeepSeek"
    missing_key_message = "Server missing DeepSeek API key."


class GatewayProvider(HTTPChatProvider):
    """
    OpenRouter gateway.

    Model ids are namespaced by vendor (``openai/gpt-4o-mini``) and the
    gateway expects HTTP-Referer and X-Title headers identifying the app.
    """

    provider = Provider.GATEWAY
    display_name = "OpenRouter"
    missing_key_message = "Server missing OpenRouter API key."

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        referer: str,
        title: str,
        timeout: float = 60.0,
    ):
        super().__init__(api_key, base_url, timeout)
        self._referer = referer
        self._title = title

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = self._referer
        headers["X-Title"] = self._title
        return headers

    def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        temperature: float = 0.6,
    ) -> LLMResponse:
        return super().complete(messages, to_gateway_model(model), temperature)


class LLMRouter:
    """
    Main LLM entry point: picks one provider per request and calls it.

    Routing (first match wins):
    1. DeepSeek provider (stored on the bot, or a ``deepseek*`` model id)
    2. Gateway, when OPENROUTER_API_KEY is set and GATEWAY_PRIORITY is on
    3. OpenAI SDK

    Example:
        router = LLMRouter()
        response = router.complete("deepseek-reasoner", messages)
        response.provider  # Provider.DEEPSEEK, regardless of other keys
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        providers: Optional[Dict[Provider, BaseLLMProvider]] = None,
    ):
        """
        Initialize the router.

        Args:
            config: Optional LLMConfig instance
            providers: Optional provider overrides keyed by Provider
        """
        self.config = config or get_settings().llm

        self._providers: Dict[Provider, BaseLLMProvider] = {
            Provider.OPENAI: OpenAIProvider(api_key=self.config.openai_api_key),
            Provider.DEEPSEEK: DeepSeekProvider(
                api_key=self.config.deepseek_api_key,
                base_url=self.config.deepseek_base_url,
                timeout=self.config.request_timeout,
            ),
            Provider.GATEWAY: GatewayProvider(
                api_key=self.config.gateway_api_key,
                base_url=self.config.gateway_base_url,
                referer=self.config.gateway_referer,
                title=self.config.gateway_title,
                timeout=self.config.request_timeout,
            ),
        }
        if providers:
            self._providers.update(providers)

        logger.info(
            f"LLMRouter initialized (gateway priority: {self.config.gateway_enabled})"
        )

    def select(self, model: str, provider: Optional[str] = None) -> BaseLLMProvider:
        """
        Choose the provider for a model.

        Args:
            model: Model id from the bot configuration
            provider: Provider stored on the bot (resolved from model if None)

        Returns:
            The provider that will serve the request
        """
        try:
            stored = Provider(provider) if provider else resolve_provider(model)
        except ValueError:
            raise ValueError(f"Unknown LLM provider: {provider}")

        if stored is Provider.DEEPSEEK:
            return self._providers[Provider.DEEPSEEK]

        if self.config.gateway_enabled or (
            stored is Provider.GATEWAY and self._providers[Provider.GATEWAY].is_configured
        ):
            return self._providers[Provider.GATEWAY]

        return self._providers[Provider.OPENAI]

    def is_available(self, model: str, provider: Optional[str] = None) -> bool:
        """Return True if the provider selected for this model has credentials."""
        return self.select(model, provider).is_configured

    def complete(
        self,
        model: Optional[str],
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        provider: Optional[str] = None,
    ) -> LLMResponse:
        """
        Route a chat completion.

        Args:
            model: Bot model id (default from config)
            messages: Chat messages
            temperature: Sampling temperature (default from config)
            provider: Provider stored on the bot

        Returns:
            LLMResponse from the selected provider
        """
        model = model or self.config.default_model
        if temperature is None:
            temperature = self.config.default_temperature

        messages, has_images = prepare_vision_messages(messages, self.config.max_images)
        if has_images:
            model = self.config.vision_model
            provider = Provider.OPENAI.value

        backend = self.select(model, provider)
        logger.info(f"Routing completion: model={model}, provider={backend.provider.value}")

        return backend.complete(messages, model=model, temperature=temperature)
