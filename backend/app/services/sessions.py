from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.core.security import create_access_token
from app.models.user import User
from app.services.refresh_tokens import issue_refresh_token


@dataclass(frozen=True)
class SessionTokens:
    access: str
    refresh: str


def issue_session_tokens(db: Session, user: User) -> SessionTokens:
    """Same access/refresh pair password login hands out."""
    access = create_access_token(subject=str(user.id), token_version=user.token_version or 0)
    refresh = issue_refresh_token(db, user_id=user.id)
    return SessionTokens(access=access, refresh=refresh)
