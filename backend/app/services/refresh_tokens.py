from __future__ import annotations

import hmac
import hashlib
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.refresh_token import RefreshToken


def refresh_token_expiry() -> datetime:
    hours = int(getattr(settings, "REFRESH_TOKEN_EXPIRE_HOURS", 24))
    return datetime.now(timezone.utc) + timedelta(hours=hours)


def hash_refresh_token(raw_token: str) -> str:
    """
    Store only a hash in DB.
    Use HMAC keyed by JWT_SECRET so DB leaks can't be brute-forced easily.
    """
    secret = (settings.JWT_SECRET or "").encode("utf-8")
    if not secret:
        raise RuntimeError("JWT_SECRET must be set to hash refresh tokens.")
    return hmac.new(secret, raw_token.encode("utf-8"), hashlib.sha256).hexdigest()


def issue_refresh_token(db: Session, user_id: int) -> str:
    """
    Creates a new refresh token for user, stores hash in DB, returns raw token.
    """
    raw = secrets.token_urlsafe(48)
    token_hash = hash_refresh_token(raw)

    rt = RefreshToken(
        user_id=user_id,
        token_hash=token_hash,
        expires_at=refresh_token_expiry(),
        revoked_at=None,
    )
    db.add(rt)
    db.commit()
    return raw


def get_valid_refresh_token(db: Session, raw_refresh_token: str) -> RefreshToken | None:
    token_hash = hash_refresh_token(raw_refresh_token)
    rt = db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).first()
    if not rt:
        return None

    now = datetime.now(timezone.utc)
    if rt.revoked_at is not None:
        return None
    # SQLite may round-trip tz-aware datetimes as naive. Compare consistently.
    expires_at = rt.expires_at
    if expires_at is None:
        return None
    if getattr(expires_at, "tzinfo", None) is None and now.tzinfo is not None:
        now_cmp = now.replace(tzinfo=None)
    else:
        now_cmp = now
    if expires_at <= now_cmp:
        return None

    return rt
