"""Caller identity for the HTTP layer.

The identity provider issues HS256 JWTs whose ``sub`` is the user id.
Routes resolve the caller once through ``get_current_user_id`` and pass
the id to the managers; managers never look at tokens. The identity
webhook authenticates with a shared API key instead.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, Header, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from pydantic import BaseModel

from timeout_app.core.config import Settings, DEFAULT_JWT_SECRET
from timeout_app.core.errors import Unauthenticated
from timeout_app.core.logging import get_logger

logger = get_logger(__name__)

# Missing credentials are reported through the result envelope, not by FastAPI
security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """JWT token payload."""
    sub: str  # User ID
    email: Optional[str] = None
    exp: datetime


def check_secret_strength(settings: Settings):
    if settings.environment == "production":
        if settings.jwt_secret_key == DEFAULT_JWT_SECRET:
            raise ValueError("JWT_SECRET_KEY must be set to a secure value in production!")
        if len(settings.jwt_secret_key) < 32:
            logger.warning("JWT_SECRET_KEY should be at least 32 characters for security")


def create_access_token(
    user_id: str,
    settings: Settings,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create a JWT access token for a user.

    Args:
        user_id: Identity-provider user id, stored as ``sub``
        settings: Supplies the secret, algorithm and default lifetime
        email: Optional email claim
        expires_delta: Token lifetime (default: ACCESS_TOKEN_EXPIRE_MINUTES)

    Returns:
        Encoded JWT token

    Example:
        >>> token = create_access_token("user_2abc", settings)
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)

    now = datetime.now(timezone.utc)
    expire = now + expires_delta

    payload = {
        "sub": user_id,
        "exp": expire,
        "iat": now,
    }
    if email:
        payload["email"] = email

    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

    logger.debug(f"Access token created, expires {expire.isoformat()}", extra={"user_id": user_id})
    return token


def decode_token(token: str, settings: Settings) -> TokenData:
    """Decode and validate a JWT token.

    Raises:
        Unauthenticated: If the token is invalid, expired or has no subject
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token attempted")
        raise Unauthenticated("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token attempted: {e}")
        raise Unauthenticated("Invalid authentication token")

    if not payload.get("sub"):
        raise Unauthenticated("Token has no subject")

    return TokenData(
        sub=payload["sub"],
        email=payload.get("email"),
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_current_user_id(
    settings: Settings = Depends(get_settings),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """FastAPI dependency resolving the caller's user id from the bearer token.

    Example:
        >>> @router.get("/profiles/me")
        >>> def me(user_id: str = Depends(get_current_user_id)): ...
    """
    if credentials is None:
        raise Unauthenticated()

    token_data = decode_token(credentials.credentials, settings)
    logger.debug("Caller authenticated", extra={"user_id": token_data.sub})
    return token_data.sub


def verify_api_key(api_key: Optional[str], settings: Settings) -> bool:
    """Verify an API key for service-to-service calls (identity webhook)."""
    return bool(api_key) and api_key in settings.webhook_api_keys


async def require_webhook_key(
    settings: Settings = Depends(get_settings),
    x_api_key: Optional[str] = Header(default=None),
):
    if not verify_api_key(x_api_key, settings):
        logger.warning("Identity webhook called without a valid API key")
        raise Unauthenticated("Invalid API key")
