# app/services/social_login.py
"""
Social sign-in orchestration: verify -> normalize -> resolve -> issue session.

The only entry point the routes use. Verification and resolution failures surface
as SocialAuthError subclasses; session issuer failures propagate untouched.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from app.auth.claims import AppleOneTimeProfile
from app.auth.errors import AccountDisabledError, KeyFetchError, TokenVerificationError
from app.auth.verifiers import TokenVerifier
from app.models.user import User
from app.services.identities import IdentityResolver
from app.services.sessions import SessionTokens, issue_session_tokens
from app.services.users import SqlAlchemyUserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SocialLoginResult:
    user: User
    tokens: SessionTokens


def social_login(
    db: Session,
    verifier: TokenVerifier,
    raw_token: str,
    profile: AppleOneTimeProfile | None = None,
    *,
    issue_session: Callable[[Session, User], SessionTokens] = issue_session_tokens,
) -> SocialLoginResult:
    provider = verifier.provider.value

    try:
        claims = verifier.verify(raw_token, profile)
    except TokenVerificationError as exc:
        logger.warning("Rejected %s identity token: %s (%s)", provider, exc.code, exc)
        raise
    except KeyFetchError as exc:
        logger.error("Could not load %s signing keys: %s", provider, exc)
        raise

    user = IdentityResolver(SqlAlchemyUserRepository(db)).resolve_or_create(claims)
    if not user.is_active:
        logger.warning("Refusing %s sign-in for inactive user id=%s", provider, user.id)
        raise AccountDisabledError("User is inactive")

    tokens = issue_session(db, user)
    logger.info("%s sign-in succeeded for user id=%s", provider, user.id)
    return SocialLoginResult(user=user, tokens=tokens)
