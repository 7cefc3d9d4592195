# app/services/identities.py
"""
Resolve a verified provider identity to exactly one local user.

Login path: the (provider, subject) pair is already linked -> return that user as-is.
Signup path: create the user and the link together. When two first-time requests for
the same identity race, the database uniqueness constraint on (provider, subject)
picks the winner; the loser sees DuplicateIdentityError, rolls back and re-reads.
"""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

from app.auth.claims import NormalizedClaims
from app.auth.errors import DuplicateIdentityError, IdentityConflictError, StorageError
from app.core.config import settings
from app.models.user import User
from app.services.users import UserRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IdentityResolver:
    def __init__(
        self,
        repo: UserRepository,
        *,
        email_collision_policy: str | None = None,
        storage_retries: int | None = None,
    ) -> None:
        self.repo = repo
        self.email_collision_policy = email_collision_policy or settings.SOCIAL_EMAIL_COLLISION_POLICY
        if storage_retries is None:
            storage_retries = settings.STORAGE_RETRIES
        self.storage_retries = max(0, int(storage_retries))

    def resolve_or_create(self, claims: NormalizedClaims) -> User:
        """
        Return the local user for ``claims``, creating it on first sign-in.

        Never updates an existing user from claims. Raises IdentityConflictError when
        the identity cannot be linked (email collision under the "reject" policy or with
        an unverified email, or a constraint other than the identity one), StorageError
        on storage failure.
        """
        user = self._find_linked(claims)
        if user is not None:
            return user

        if claims.email:
            existing = self._with_retries(self.repo.find_by_email, claims.email)
            if existing is not None:
                return self._resolve_email_collision(existing, claims)

        try:
            return self._with_retries(self.repo.create_user_and_link, claims)
        except DuplicateIdentityError:
            return self._recover_lost_race(claims)

    # ------------------------------------------------------------------

    def _find_linked(self, claims: NormalizedClaims) -> User | None:
        return self._with_retries(
            self.repo.find_by_provider_subject,
            claims.provider.value,
            claims.subject,
        )

    def _resolve_email_collision(self, existing: User, claims: NormalizedClaims) -> User:
        # The email owner may be this very identity, created by a concurrent request.
        user = self._find_linked(claims)
        if user is not None:
            return user

        # Only a provider-verified email may be linked to an existing account.
        if self.email_collision_policy != "link" or not claims.email_verified:
            logger.warning(
                "Refusing %s sign-in: email already belongs to unlinked user id=%s (policy=%s, verified=%s)",
                claims.provider.value,
                existing.id,
                self.email_collision_policy,
                claims.email_verified,
            )
            raise IdentityConflictError(
                "An account with this email already exists. "
                "Sign in with your original method to link accounts."
            )

        try:
            self._with_retries(self.repo.link_identity, existing, claims)
        except DuplicateIdentityError:
            return self._recover_lost_race(claims)
        return existing

    def _recover_lost_race(self, claims: NormalizedClaims) -> User:
        user = self._find_linked(claims)
        if user is not None:
            logger.warning(
                "Concurrent first sign-in for the same %s identity; using user id=%s",
                claims.provider.value,
                user.id,
            )
            return user
        # The violated constraint was not the identity one (e.g. email/username taken).
        raise IdentityConflictError("Account could not be created: conflicting account data")

    def _with_retries(self, fn: Callable[..., T], *args) -> T:
        attempts = 1 + self.storage_retries
        attempt = 1
        while True:
            try:
                return fn(*args)
            except StorageError as exc:
                if not exc.retryable or attempt >= attempts:
                    logger.error("Identity store call failed (attempt %d/%d): %s", attempt, attempts, exc)
                    raise
                logger.warning("Identity store call failed (attempt %d/%d), retrying: %s", attempt, attempts, exc)
                attempt += 1
