# app/services/users.py
"""
User storage for social sign-in.

Responsibilities:
- Lookup of local users by linked provider identity or email
- JIT (Just-In-Time) creation of a user plus its provider link in one transaction
- Translating SQLAlchemy failures into the social auth error taxonomy
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional, Protocol

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from app.auth.claims import NormalizedClaims
from app.auth.errors import DuplicateIdentityError, StorageError, StorageTimeoutError
from app.models.linked_identity import LinkedIdentity
from app.models.user import User

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "user"
NAME_MAX_LENGTH = 100


def get_user_by_provider_subject(db: Session, provider: str, subject: str) -> Optional[User]:
    """Look up the user linked to a provider identity."""
    return (
        db.query(User)
        .join(LinkedIdentity, LinkedIdentity.user_id == User.id)
        .filter(LinkedIdentity.provider == provider, LinkedIdentity.subject == subject)
        .first()
    )


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Look up a user by email address."""
    return db.query(User).filter(User.email == email.strip().lower()).first()


def normalize_name(name: str | None) -> str:
    """Trim to the column size; missing names are stored empty."""
    if not name:
        return ""
    return name.strip()[:NAME_MAX_LENGTH]


def default_username(claims: NormalizedClaims) -> str:
    """Email when the provider shared one, otherwise a stable per-identity handle."""
    if claims.email:
        return claims.email
    digest = hashlib.sha256(claims.subject.encode("utf-8")).hexdigest()[:16]
    return f"{claims.provider.value}_{digest}"


def build_user(claims: NormalizedClaims) -> User:
    return User(
        user_uid=str(uuid.uuid4()),
        username=default_username(claims),
        email=claims.email,
        first_name=normalize_name(claims.given_name),
        last_name=normalize_name(claims.family_name),
        role=DEFAULT_ROLE,
        password_hash=None,
        is_active=True,
        is_email_verified=bool(claims.email and claims.email_verified),
        token_version=0,
    )


def _is_timeout(exc: Exception) -> bool:
    message = str(exc).lower()
    return "timeout" in message or "timed out" in message


class UserRepository(Protocol):
    """Storage contract used by the identity resolver. Must be race-safe."""

    def find_by_provider_subject(self, provider: str, subject: str) -> Optional[User]: ...

    def find_by_email(self, email: str) -> Optional[User]: ...

    def create_user_and_link(self, claims: NormalizedClaims) -> User: ...

    def link_identity(self, user: User, claims: NormalizedClaims) -> None: ...

    def rollback(self) -> None: ...


class SqlAlchemyUserRepository:
    """
    UserRepository backed by a SQLAlchemy session.

    Writes raise DuplicateIdentityError when a uniqueness constraint fires, so the
    resolver can tell a lost creation race from a real storage failure.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    @contextmanager
    def _storage_errors(self) -> Iterator[None]:
        try:
            yield
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateIdentityError(str(e.orig)) from e
        except PoolTimeoutError as e:
            self.db.rollback()
            raise StorageTimeoutError(f"Database pool timed out: {e}") from e
        except OperationalError as e:
            self.db.rollback()
            if _is_timeout(e):
                raise StorageTimeoutError(f"Database call timed out: {e.orig}") from e
            raise StorageError(f"Database unavailable: {e.orig}", retryable=True) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Database error: {e}") from e

    def find_by_provider_subject(self, provider: str, subject: str) -> Optional[User]:
        with self._storage_errors():
            return get_user_by_provider_subject(self.db, provider, subject)

    def find_by_email(self, email: str) -> Optional[User]:
        with self._storage_errors():
            return get_user_by_email(self.db, email)

    def create_user_and_link(self, claims: NormalizedClaims) -> User:
        """Create the user and its LinkedIdentity atomically."""
        with self._storage_errors():
            user = build_user(claims)
            self.db.add(user)
            self.db.flush()
            self.db.add(
                LinkedIdentity(
                    provider=claims.provider.value,
                    subject=claims.subject,
                    user_id=user.id,
                )
            )
            self.db.commit()
            self.db.refresh(user)

        logger.info(
            "Provisioned new %s user: id=%s, user_uid=%s, email=%s",
            claims.provider.value,
            user.id,
            user.user_uid,
            user.email,
        )
        return user

    def link_identity(self, user: User, claims: NormalizedClaims) -> None:
        """Bind a provider identity to an existing user without touching the user."""
        with self._storage_errors():
            self.db.add(
                LinkedIdentity(
                    provider=claims.provider.value,
                    subject=claims.subject,
                    user_id=user.id,
                )
            )
            self.db.commit()

        logger.info("Linked %s identity to existing user id=%s", claims.provider.value, user.id)

    def rollback(self) -> None:
        self.db.rollback()
