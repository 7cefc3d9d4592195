# app/auth/errors.py
"""
Typed failures for social sign-in.

Every exception carries a stable ``code`` (rendered as the ``error`` field of the
response body) and the HTTP ``status_code`` it maps to. Routes never build
HTTPExceptions for these; the handler registered in ``app.main`` does it.
"""
from __future__ import annotations


class SocialAuthError(Exception):
    """Base exception for social sign-in failures."""

    code = "AUTH_ERROR"
    status_code = 400


# ---------------------------------------------------------------------------
# Verification (terminal: the client must fetch a fresh token)
# ---------------------------------------------------------------------------


class TokenVerificationError(SocialAuthError):
    """Base exception for identity token verification failures."""

    code = "INVALID_TOKEN"
    status_code = 401


class MalformedTokenError(TokenVerificationError):
    """Raised when the token cannot be parsed as a JWT."""

    code = "MALFORMED_TOKEN"


class UnknownKeyError(TokenVerificationError):
    """Raised when the token's signing key is not in the provider's key set."""

    code = "UNKNOWN_KEY"


class BadSignatureError(TokenVerificationError):
    """Raised when the token signature does not verify."""

    code = "BAD_SIGNATURE"


class BadIssuerError(TokenVerificationError):
    """Raised when the token issuer is not the provider's issuer."""

    code = "BAD_ISSUER"


class BadAudienceError(TokenVerificationError):
    """Raised when the token audience is not one of our client ids."""

    code = "BAD_AUDIENCE"


class TokenExpiredError(TokenVerificationError):
    """Raised when the token has expired."""

    code = "TOKEN_EXPIRED"


class MissingClaimError(TokenVerificationError):
    """Raised when a required claim is absent."""

    code = "MISSING_CLAIM"


# ---------------------------------------------------------------------------
# Transient / infrastructure (retryable by the client)
# ---------------------------------------------------------------------------


class KeyFetchError(SocialAuthError):
    """Raised when the provider's JWKS cannot be fetched."""

    code = "KEY_FETCH_FAILED"
    status_code = 503


class KeyFetchTimeoutError(KeyFetchError):
    """Raised when fetching the provider's JWKS timed out."""

    code = "TIMEOUT"


class ProviderNotConfiguredError(SocialAuthError):
    """Raised when a provider has no client ids configured."""

    code = "PROVIDER_NOT_CONFIGURED"
    status_code = 503


class StorageError(SocialAuthError):
    """Raised when the identity store fails."""

    code = "STORAGE_FAILURE"
    status_code = 500

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class StorageTimeoutError(StorageError):
    """Raised when the identity store did not answer in time."""

    code = "TIMEOUT"
    status_code = 503

    def __init__(self, message: str = "") -> None:
        super().__init__(message, retryable=True)


# ---------------------------------------------------------------------------
# Account resolution
# ---------------------------------------------------------------------------


class IdentityConflictError(SocialAuthError):
    """Raised when a new identity collides with an existing, unlinked account."""

    code = "CONFLICT"
    status_code = 409


class AccountDisabledError(SocialAuthError):
    """Raised when the linked local account is inactive."""

    code = "FORBIDDEN"
    status_code = 403


class DuplicateIdentityError(Exception):
    """
    Raised by the repository when a create hits a uniqueness constraint.

    Internal only: the resolver recovers from it and it never reaches a client.
    """
