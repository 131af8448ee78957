"""HS256 access-token encoding and verification.

Tokens are issued by the identity provider; ``create_access_token`` exists
for tooling and tests that need a token signed with the shared secret.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from questline.config import get_settings


def create_access_token(user_id: int, expires_in: timedelta | None = None) -> str:
    """Create a short-lived access token for ``user_id``."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + (expires_in or timedelta(minutes=settings.jwt_access_token_expire_minutes)),
        "iss": settings.jwt_issuer,
        "type": "access",
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str, expected_type: str = "access") -> dict[str, Any]:
    """Decode and validate a token.

    Raises:
        jwt.InvalidTokenError: on a bad signature, expiry, issuer or type.
    """
    settings = get_settings()
    payload: dict[str, Any] = jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "exp", "iss"]},
    )
    if payload.get("type") != expected_type:
        msg = f"Expected {expected_type} token, got {payload.get('type')}"
        raise jwt.InvalidTokenError(msg)
    return payload
