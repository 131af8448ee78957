"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from questline.auth.jwt import verify_token
from questline.database import get_session
from questline.db.models import Profile
from questline.errors import NotAuthenticated, ProfileNotFound
from questline.gamification.xp_service import get_profile

_bearer = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> Profile:
    """Verify the bearer token and return the caller's profile.

    Raises NotAuthenticated, which the error handlers turn into a 401.
    """
    if credentials is None:
        raise NotAuthenticated("Not authenticated")
    try:
        payload = verify_token(credentials.credentials, expected_type="access")
        user_id = int(payload["sub"])
    except (jwt.InvalidTokenError, ValueError) as e:
        raise NotAuthenticated(str(e)) from e

    try:
        return await get_profile(db, user_id)
    except ProfileNotFound as e:
        raise NotAuthenticated("User not found") from e


async def require_admin(user: Profile = Depends(get_current_user)) -> Profile:
    """Same as get_current_user but additionally requires the admin flag."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
