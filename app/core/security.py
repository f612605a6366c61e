# app/core/security.py
from datetime import datetime, timedelta, timezone

from jose import jwt

from app.core.config import settings
from app.utils.enums import Role


def create_access_token(subject: str, role: Role | None = None) -> str:
    """Sign a token the way the auth provider does (used by ops scripts and tests)."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRE_MINUTES)
    to_encode = {
        "exp": expire,
        "sub": str(subject),
    }
    if role is not None:
        to_encode["role"] = role.value
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> str:
    """
    Decode a JWT and return the subject (user_id).
    Raises JWTError on any failure.
    """
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    return payload.get("sub")


def require_roles(*allowed: Role):
    """
    Dependency factory: ensures current_user.role in allowed.
    """
    from fastapi import Depends, HTTPException, status
    from app.api.dependencies.auth import get_current_user

    def _check(current_user=Depends(get_current_user)):
        if current_user.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions"
            )
        return current_user

    return _check
