from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import user_id_from_token
from app.models.user import User
from app.repositories.user import UserRepository
from app.services.realtime import RealtimeHub
from app.utils.exceptions import AuthenticationError, AuthorizationError

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Resolve the bearer token to a user"""
    if credentials is None:
        raise AuthenticationError("Not authenticated", "MISSING_TOKEN")

    user_id = user_id_from_token(credentials.credentials)
    if user_id is None:
        raise AuthenticationError("Could not validate credentials", "INVALID_TOKEN")

    user = await UserRepository(db).get_by_id(user_id)
    if user is None:
        raise AuthenticationError("User not found", "INVALID_TOKEN")
    return user


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_active or current_user.is_blocked:
        raise AuthorizationError("Inactive user", "INACTIVE_USER")
    return current_user


def get_hub(request: Request) -> RealtimeHub:
    return request.app.state.hub
