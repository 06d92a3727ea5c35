"""
HS256 JWT token management.

The federated login handshake runs outside this service; once it has
established a Steam identity it mints an access token here. ``sub`` is the
64-bit Steam id and ``name`` carries the display name.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from overachiever.config import get_settings


def create_access_token(user_id: int, display_name: str = "") -> str:
    """
    Create an access token for a Steam user.

    Args:
        user_id: The user's Steam id.
        display_name: Persona name reported by the login handshake.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "name": display_name,
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_access_token_expire_days),
        "iss": settings.jwt_issuer,
        "type": "access",
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str, expected_type: str = "access") -> dict[str, Any]:
    """
    Verify and decode a JWT token.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, or wrong type.
    """
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if payload.get("type") != expected_type:
        msg = f"Expected token type '{expected_type}', got '{payload.get('type')}'"
        raise jwt.InvalidTokenError(msg)

    try:
        int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        msg = "Token subject is not a Steam id"
        raise jwt.InvalidTokenError(msg) from None

    return payload
