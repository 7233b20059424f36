# SPDX-License-Identifier: Apache-2.0

"""
Bearer-token verification.

Users sign in through the dashboard, which mints HS256 access tokens with the
shared JWT secret. This service only verifies them, checks the JTI against the
Redis revocation list and loads the active user.
"""

import time
import uuid
from typing import Any, Optional

import redis
from fastapi import Depends, Header, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .errors import AuthenticationMissing
from .models import User
from .telemetry import bind_user_context, log_json

ALGORITHM = "HS256"
REVOKED_PREFIX = "revoked:"


def _build_revocation_client() -> Optional[redis.Redis]:
    if not settings.REDIS_URL:
        return None
    try:
        return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    except (ValueError, redis.RedisError):
        log_json(30, "auth_revocation_degraded", reason="redis client unavailable; skipping revocation checks")
        return None


_rev = _build_revocation_client()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def create_access_token(*, user_id: int, ttl_minutes: Optional[int] = None) -> str:
    """
    Mint an access token for tooling and tests.

    The token carries the user id in 'sub' and a JTI so revocation can target it.
    """
    issued_at = int(time.time())
    ttl = (ttl_minutes if ttl_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES) * 60
    claims = {
        "sub": str(user_id),
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": issued_at,
        "exp": issued_at + ttl,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[ALGORITHM],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
    )


def get_authorization(authorization: Optional[str] = Header(None)) -> str:
    scheme, _, credentials = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        raise AuthenticationMissing("Missing bearer token")
    return credentials.strip()


def _subject_id(token: str) -> tuple[int, Any]:
    """User id and JTI from a verified token."""
    try:
        claims = decode_token(token)
    except JWTError:
        raise _unauthorized("Invalid token")
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip().isdigit() or int(sub) <= 0:
        raise _unauthorized("Invalid token payload")
    return int(sub), claims.get("jti")


def _is_revoked(jti: Any) -> bool:
    if _rev is None or not isinstance(jti, str) or not jti:
        return False
    try:
        return bool(_rev.exists(f"{REVOKED_PREFIX}{jti}"))
    except redis.RedisError as exc:
        log_json(30, "auth_revocation_unavailable", error_type=type(exc).__name__)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Revocation service unavailable; please retry shortly",
        )


def get_current_user(db: Session = Depends(get_db), token: str = Depends(get_authorization)) -> User:
    user_id, jti = _subject_id(token)
    if _is_revoked(jti):
        raise _unauthorized("Token revoked")

    user = db.get(User, user_id)
    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is inactive")
    bind_user_context(user.id)
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        log_json(30, "admin_access_denied", user_id=user.id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
