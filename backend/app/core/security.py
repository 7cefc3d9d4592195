# app/core/security.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt, JWTError

from app.core.config import settings


# -------------------------
# JWT helpers
# -------------------------
def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _require_jwt_secret() -> None:
    # Auth is always on -> JWT_SECRET must always exist
    if not settings.JWT_SECRET or not settings.JWT_SECRET.strip():
        raise RuntimeError("JWT_SECRET must be set (auth is required).")


def create_access_token(subject: str, token_version: int = 0) -> str:
    """
    Access token used for API auth: Authorization: Bearer <token>
    subject = the local user's id
    """
    _require_jwt_secret()

    now = _now_utc()
    exp = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": subject,
        "purpose": "access",
        "ver": int(token_version or 0),
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }

    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    _require_jwt_secret()
    # Let callers decide how to handle JWTError
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


def verify_token_purpose(token: str, expected_purpose: str) -> dict[str, Any]:
    try:
        payload = decode_token(token)
    except JWTError:
        raise ValueError("Invalid or expired token")

    if payload.get("purpose") != expected_purpose:
        raise ValueError("Invalid token purpose")

    return payload
