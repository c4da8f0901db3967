"""
Error Types

Every error raised on a request path carries the HTTP status it maps to, so
the API layer can render a uniform ``{"error": message}`` body without
knowing which component failed.

Taxonomy:
- Configuration errors (missing keys or credentials): 500
- Upstream provider errors (non-2xx from an LLM/embedding call): 500
- Validation errors (missing or malformed request fields): 400
- Ownership errors: 401 / 403 / 404
- Document errors: 415 / 422
"""

from typing import Optional


class BotForgeError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.message}


class ConfigurationError(BotForgeError):
    """A required API key or store credential is missing."""

    status_code = 500


class UpstreamError(BotForgeError):
    """A third-party provider answered with a failure."""

    status_code = 500

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class EmbeddingError(UpstreamError):
    """The embedding provider failed or returned a malformed response."""


class DimensionMismatchError(BotForgeError):
    """An embedding does not match the configured model's dimension."""

    status_code = 500


class InvalidRequestError(BotForgeError):
    status_code = 400


class SlugTakenError(InvalidRequestError):
    def __init__(self):
        super().__init__("SLUG_TAKEN")


class UnauthorizedError(BotForgeError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ForbiddenError(BotForgeError):
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class NotFoundError(BotForgeError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class UnsupportedMediaTypeError(BotForgeError):
    status_code = 415


class UnprocessableError(BotForgeError):
    status_code = 422
