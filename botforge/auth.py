"""
Owner Authentication

Admin routes identify the bot owner from an HS256 bearer token whose ``sub``
claim is the owner id. In DEV_NO_AUTH mode a request without a token acts
as the dummy owner, so the builder can run locally without an identity
provider.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt

from config.settings import get_settings, AuthConfig
from botforge.errors import ConfigurationError, UnauthorizedError

logger = logging.getLogger(__name__)


def generate_token(owner_id: str, config: Optional[AuthConfig] = None, expires_in: int = 3600) -> str:
    """Issue a token for owner_id (default expiry: 1 hour)."""
    config = config or get_settings().auth
    if not config.jwt_secret:
        raise ConfigurationError("Server missing AUTH_JWT_SECRET.")

    payload = {
        "sub": owner_id,
        "exp": datetime.utcnow() + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def decode_token(token: str, config: Optional[AuthConfig] = None) -> Optional[Dict[str, Any]]:
    """Decode and validate a token; None if it is expired or invalid."""
    config = config or get_settings().auth
    if not config.jwt_secret:
        return None

    try:
        return jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired token")
        return None
    except jwt.InvalidTokenError:
        return None


def resolve_owner(authorization: Optional[str], config: Optional[AuthConfig] = None) -> str:
    """
    Resolve the calling owner from an Authorization header.

    Args:
        authorization: Raw header value ("Bearer <token>") or None
        config: Optional AuthConfig

    Returns:
        Owner id

    Raises:
        UnauthorizedError: If no valid token is present (outside dev mode)
    """
    config = config or get_settings().auth

    token = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            token = value.strip()

    if token is None:
        if config.dev_no_auth:
            return config.dummy_owner_id
        raise UnauthorizedError()

    payload = decode_token(token, config)
    if not payload or not payload.get("sub"):
        raise UnauthorizedError()

    return str(payload["sub"])
