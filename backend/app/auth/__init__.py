# app/auth/__init__.py
"""
Social sign-in (Google / Apple) token handling.

This package contains:
- jwks.py: provider signing-key cache (lazy, refreshed on schedule and on unknown kid)
- verifiers.py: per-provider identity token verification
- claims.py: provider-agnostic claim shape and normalization
- errors.py: typed failures mapped to HTTP responses
"""
from app.auth.claims import AppleOneTimeProfile, NormalizedClaims, Provider

__all__ = ["AppleOneTimeProfile", "NormalizedClaims", "Provider"]
