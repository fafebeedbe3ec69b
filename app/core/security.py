from datetime import timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from app.core.config import settings
from app.utils.time import utcnow


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Issue an access token for a user.

    Tokens are normally minted by the account service; this helper exists for
    local tooling and tests that need a valid signature.
    """
    expire = utcnow() + (expires_delta or timedelta(hours=1))
    payload = {"sub": str(user_id), "type": "access", "exp": expire}
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and verify a JWT token, returning None when it is invalid"""
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def user_id_from_token(token: str) -> Optional[int]:
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        return None
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
