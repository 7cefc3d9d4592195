# app/auth/verifiers.py
"""
Identity token verification for Google and Apple.

Both providers issue RS256 ID tokens signed with keys published as JWKS. A verifier
runs the checks in a fixed order and stops at the first failure:

1. structure (header + JSON payload)       -> MalformedTokenError
2. signing key by kid                      -> UnknownKeyError
3. signature                               -> BadSignatureError
4. issuer                                  -> BadIssuerError
5. audience (our client ids)               -> BadAudienceError
6. expiry                                  -> TokenExpiredError
7. subject present                         -> MissingClaimError

No retries here: a failed token is terminal and the client must obtain a new one.
"""
from __future__ import annotations

import json
import time
from functools import lru_cache
from typing import Any, Callable, Iterable

from jose import JWSError, JWTError, jws, jwt

from app.auth.claims import AppleOneTimeProfile, NormalizedClaims, Provider, normalize
from app.auth.errors import (
    BadAudienceError,
    BadIssuerError,
    BadSignatureError,
    MalformedTokenError,
    MissingClaimError,
    ProviderNotConfiguredError,
    TokenExpiredError,
    UnknownKeyError,
)
from app.auth.jwks import KeyCache, get_key_cache
from app.core.config import settings


GOOGLE_ISSUERS = frozenset({"https://accounts.google.com", "accounts.google.com"})
APPLE_ISSUER = "https://appleid.apple.com"


class TokenVerifier:
    """Verifies one provider's identity tokens against the shared key cache."""

    provider: Provider
    issuers: frozenset[str] = frozenset()
    algorithms: tuple[str, ...] = ("RS256",)

    def __init__(
        self,
        key_cache: KeyCache,
        client_ids: Iterable[str],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key_cache = key_cache
        self.client_ids = frozenset(c for c in client_ids if c)
        self._clock = clock

    def verify(self, raw_token: str, profile: AppleOneTimeProfile | None = None) -> NormalizedClaims:
        """Verify ``raw_token`` and return its claims in provider-agnostic form."""
        return normalize(self.provider, self.decode(raw_token), profile)

    def decode(self, raw_token: str) -> dict[str, Any]:
        """
        Verify ``raw_token`` and return its raw claims.

        Raises a TokenVerificationError subclass naming the first failed check,
        or KeyFetchError if the provider's keys cannot be loaded.
        """
        if not self.client_ids:
            raise ProviderNotConfiguredError(f"{self.provider.value} sign-in is not configured")

        # 1. Structure
        if not isinstance(raw_token, str) or raw_token.count(".") != 2:
            raise MalformedTokenError("Token is not a compact JWT")
        try:
            header = jwt.get_unverified_header(raw_token)
            jwt.get_unverified_claims(raw_token)
        except JWTError as e:
            raise MalformedTokenError(f"Invalid token: {e}") from e

        # 2. Signing key
        kid = header.get("kid")
        if kid is None or kid == "":
            raise UnknownKeyError("Token header missing 'kid'")
        if not isinstance(kid, str):
            raise MalformedTokenError("Token header 'kid' must be a string")
        signing_key = self.key_cache.get_key(self.provider, kid)

        # 3. Signature
        try:
            payload = jws.verify(raw_token, signing_key, algorithms=list(self.algorithms))
        except JWSError as e:
            raise BadSignatureError(f"Signature verification failed: {e}") from e
        claims = json.loads(payload.decode("utf-8"))

        # 4. Issuer
        token_issuer = claims.get("iss")
        if token_issuer not in self.issuers:
            raise BadIssuerError(f"Unexpected issuer {token_issuer!r}")

        # 5. Audience
        if not self._audience_matches(claims.get("aud")):
            raise BadAudienceError(f"Unexpected audience {claims.get('aud')!r}")

        # 6. Expiry
        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenExpiredError("Token has no valid 'exp' claim")
        if exp <= self._clock():
            raise TokenExpiredError("Token has expired")

        # 7. Subject
        sub = claims.get("sub")
        if not isinstance(sub, str) or not sub.strip():
            raise MissingClaimError("Token missing 'sub' claim")

        return claims

    def _audience_matches(self, aud: Any) -> bool:
        if isinstance(aud, str):
            return aud in self.client_ids
        if isinstance(aud, list):
            return any(isinstance(a, str) and a in self.client_ids for a in aud)
        return False


class GoogleTokenVerifier(TokenVerifier):
    provider = Provider.GOOGLE
    issuers = GOOGLE_ISSUERS


class AppleTokenVerifier(TokenVerifier):
    provider = Provider.APPLE
    issuers = frozenset({APPLE_ISSUER})


# ---------------------------------------------------------------------------
# Process-wide instances (FastAPI dependencies; overridden in tests)
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_google_verifier() -> GoogleTokenVerifier:
    return GoogleTokenVerifier(get_key_cache(), settings.GOOGLE_CLIENT_IDS)


@lru_cache(maxsize=1)
def get_apple_verifier() -> AppleTokenVerifier:
    return AppleTokenVerifier(get_key_cache(), settings.APPLE_CLIENT_IDS)
