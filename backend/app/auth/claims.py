# app/auth/claims.py
"""
Provider-agnostic claim shape.

Google and Apple identity tokens carry different claims (and Apple only sends the
user's name once, outside the token). Everything downstream of verification works
on NormalizedClaims so the identity resolver never branches on provider.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping


class Provider(str, Enum):
    GOOGLE = "google"
    APPLE = "apple"


@dataclass(frozen=True)
class NormalizedClaims:
    provider: Provider
    subject: str
    email: str | None = None
    email_verified: bool = False
    given_name: str | None = None
    family_name: str | None = None


@dataclass(frozen=True)
class AppleOneTimeProfile:
    """The ``user`` object Apple hands the frontend on first authorization only."""

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _clean_email(value: Any) -> str | None:
    email = _clean(value)
    return email.lower() if email else None


def _as_bool(value: Any) -> bool:
    # Apple sends "true"/"false" strings; Google sends booleans.
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _split_name(name: str | None) -> tuple[str | None, str | None]:
    if not name:
        return None, None
    parts = name.split(None, 1)
    first = parts[0]
    last = parts[1].strip() if len(parts) > 1 else None
    return first, last or None


def parse_apple_profile(payload: Mapping[str, Any] | None) -> AppleOneTimeProfile | None:
    """Build an AppleOneTimeProfile from the wire ``user`` object (camelCase names)."""
    if not payload:
        return None
    name = payload.get("name") or {}
    if not isinstance(name, Mapping):
        name = {}
    return AppleOneTimeProfile(
        first_name=_clean(name.get("firstName")),
        last_name=_clean(name.get("lastName")),
        email=_clean_email(payload.get("email")),
    )


def normalize_google(claims: Mapping[str, Any]) -> NormalizedClaims:
    given_name = _clean(claims.get("given_name"))
    family_name = _clean(claims.get("family_name"))
    if not given_name and not family_name:
        given_name, family_name = _split_name(_clean(claims.get("name")))

    return NormalizedClaims(
        provider=Provider.GOOGLE,
        subject=str(claims["sub"]),
        email=_clean_email(claims.get("email")),
        email_verified=_as_bool(claims.get("email_verified")),
        given_name=given_name,
        family_name=family_name,
    )


def normalize_apple(
    claims: Mapping[str, Any],
    profile: AppleOneTimeProfile | None = None,
) -> NormalizedClaims:
    email = _clean_email(claims.get("email"))
    email_verified = _as_bool(claims.get("email_verified"))
    given_name = None
    family_name = None

    if profile is not None:
        given_name = _clean(profile.first_name)
        family_name = _clean(profile.last_name)
        profile_email = _clean_email(profile.email)
        if not email and profile_email:
            # Side-channel email is not covered by the token signature.
            email = profile_email
            email_verified = False

    return NormalizedClaims(
        provider=Provider.APPLE,
        subject=str(claims["sub"]),
        email=email,
        email_verified=email_verified,
        given_name=given_name,
        family_name=family_name,
    )


def normalize(
    provider: Provider,
    claims: Mapping[str, Any],
    profile: AppleOneTimeProfile | None = None,
) -> NormalizedClaims:
    """Map verified provider claims (plus Apple's one-time profile) to NormalizedClaims."""
    provider = Provider(provider)
    if provider is Provider.GOOGLE:
        return normalize_google(claims)
    return normalize_apple(claims, profile)
