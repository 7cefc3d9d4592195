# app/auth/jwks.py
"""
Provider signing-key cache.

Responsibilities:
- Lazy JWKS fetching per provider (no network calls on import)
- Wholesale replacement of a provider's key set on refresh (never partially updated)
- Time-based refresh after JWKS_REFRESH_SECONDS, plus one refresh on unknown kid
  (at most once per JWKS_MIN_REFRESH_SECONDS)
- Single-flight refresh: concurrent misses for one provider share one fetch
- Bounded fetches (timeout + small retry budget), surfaced as typed errors
"""
from __future__ import annotations

import json
import logging
import ssl
import threading
import time
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Callable, Mapping
from urllib.error import URLError
from urllib.request import urlopen

import certifi
from jose import jwk

from app.auth.claims import Provider
from app.auth.errors import KeyFetchError, KeyFetchTimeoutError, UnknownKeyError
from app.core.config import settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderKeySet:
    """Immutable snapshot of one provider's JWKS."""

    provider: Provider
    jwks_url: str
    keys: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    fetched_at: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self.fetched_at == 0.0

    def is_stale(self, now: float, max_age: float) -> bool:
        return self.is_empty or (now - self.fetched_at) > max_age


class KeyCache:
    """
    Thread-safe in-memory cache of provider signing keys, keyed by kid.

    One instance per process serves every provider. Lookups never block on each
    other; only refreshes are serialized, per provider.
    """

    def __init__(
        self,
        jwks_urls: Mapping[Provider, str],
        *,
        refresh_seconds: float = 3600,
        min_refresh_seconds: float = 30,
        fetch_timeout: float = 5.0,
        fetch_retries: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._refresh_seconds = refresh_seconds
        # Unknown kids only trigger a refresh once the set is at least this old.
        self._min_refresh_seconds = max(0.0, float(min_refresh_seconds))
        self._fetch_timeout = fetch_timeout
        self._fetch_retries = max(0, int(fetch_retries))
        self._clock = clock

        self._sets: dict[Provider, ProviderKeySet] = {}
        self._locks: dict[Provider, threading.Lock] = {}
        self._attempts: dict[Provider, int] = {}
        self._last_error: dict[Provider, KeyFetchError | None] = {}
        for provider, url in jwks_urls.items():
            provider = Provider(provider)
            self._sets[provider] = ProviderKeySet(provider=provider, jwks_url=url)
            self._locks[provider] = threading.Lock()
            self._attempts[provider] = 0
            self._last_error[provider] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_key(self, provider: Provider, kid: str) -> Any:
        """
        Return the public key for ``kid``.

        Raises UnknownKeyError if the provider does not publish that kid (after one
        refresh), KeyFetchError / KeyFetchTimeoutError if the JWKS cannot be loaded.
        """
        provider = Provider(provider)
        if not isinstance(kid, str) or not kid:
            raise UnknownKeyError("Signing key id must be a non-empty string")
        current = self.snapshot(provider)
        refreshed = False

        if current.is_stale(self._clock(), self._refresh_seconds):
            try:
                current = self._refresh_if_unchanged(provider, current)
                refreshed = True
            except KeyFetchError:
                if kid in current.keys:
                    logger.warning(
                        "Scheduled JWKS refresh for %s failed; serving keys fetched at %.0f",
                        provider.value,
                        current.fetched_at,
                    )
                    return current.keys[kid]
                raise

        key = current.keys.get(kid)
        if key is not None:
            return key

        if not refreshed and self._clock() - current.fetched_at >= self._min_refresh_seconds:
            # Key not found; maybe keys rotated. Try one refresh.
            logger.info("Unknown kid=%s for %s; refreshing JWKS", kid, provider.value)
            current = self._refresh_if_unchanged(provider, current)
            key = current.keys.get(kid)
            if key is not None:
                return key

        raise UnknownKeyError(f"Signing key not found for kid: {kid}")

    def refresh(self, provider: Provider) -> ProviderKeySet:
        """Force a refresh of ``provider``'s key set (shares an in-flight one)."""
        provider = Provider(provider)
        return self._refresh_if_unchanged(provider, self.snapshot(provider))

    def snapshot(self, provider: Provider) -> ProviderKeySet:
        try:
            return self._sets[Provider(provider)]
        except KeyError:
            raise KeyFetchError(f"No JWKS endpoint configured for {provider}") from None

    def clear(self) -> None:
        """Drop every cached key set (useful for testing)."""
        for provider, lock in self._locks.items():
            with lock:
                url = self._sets[provider].jwks_url
                self._sets[provider] = ProviderKeySet(provider=provider, jwks_url=url)
                self._last_error[provider] = None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _refresh_if_unchanged(self, provider: Provider, observed: ProviderKeySet) -> ProviderKeySet:
        """
        Replace ``observed`` with a freshly fetched set, unless another caller already did.

        Callers that queued behind an in-flight refresh take its outcome, success or
        failure, instead of fetching again.
        """
        attempt_seen = self._attempts[provider]
        with self._locks[provider]:
            current = self._sets[provider]
            if current is not observed:
                return current

            last_error = self._last_error[provider]
            if self._attempts[provider] != attempt_seen and last_error is not None:
                raise type(last_error)(str(last_error)) from last_error

            self._attempts[provider] += 1
            try:
                fresh = self._fetch(provider, current.jwks_url)
            except KeyFetchError as exc:
                self._last_error[provider] = exc
                raise

            self._last_error[provider] = None
            self._sets[provider] = fresh
            return fresh

    def _fetch(self, provider: Provider, jwks_url: str) -> ProviderKeySet:
        if not jwks_url:
            raise KeyFetchError(f"No JWKS endpoint configured for {provider.value}")

        attempts = 1 + self._fetch_retries
        data: dict[str, Any] | None = None
        for attempt in range(1, attempts + 1):
            try:
                data = self._download(jwks_url)
                break
            except KeyFetchError as exc:
                logger.warning(
                    "JWKS fetch for %s failed (attempt %d/%d): %s",
                    provider.value,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt == attempts:
                    logger.error("Giving up fetching JWKS for %s from %s", provider.value, jwks_url)
                    raise

        keys_list = (data or {}).get("keys") or []
        if not keys_list:
            raise KeyFetchError("JWKS response contains no keys")

        keys: dict[str, Any] = {}
        for key_data in keys_list:
            kid = key_data.get("kid")
            if not kid:
                continue
            try:
                keys[kid] = jwk.construct(key_data, algorithm=key_data.get("alg") or "RS256")
            except Exception as e:
                logger.warning("Failed to construct %s key for kid=%s: %s", provider.value, kid, e)

        logger.info("Cached %d %s signing keys", len(keys), provider.value)
        return ProviderKeySet(
            provider=provider,
            jwks_url=jwks_url,
            keys=MappingProxyType(keys),
            fetched_at=self._clock(),
        )

    def _download(self, jwks_url: str) -> dict[str, Any]:
        logger.info("Fetching JWKS from %s", jwks_url)
        context = ssl.create_default_context(cafile=certifi.where())
        try:
            with urlopen(jwks_url, timeout=self._fetch_timeout, context=context) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except TimeoutError as e:
            raise KeyFetchTimeoutError(f"Timed out fetching JWKS: {e}") from e
        except URLError as e:
            if isinstance(e.reason, TimeoutError):
                raise KeyFetchTimeoutError(f"Timed out fetching JWKS: {e.reason}") from e
            raise KeyFetchError(f"Failed to fetch JWKS: {e}") from e
        except (OSError, ValueError) as e:
            raise KeyFetchError(f"Failed to fetch JWKS: {e}") from e

        if not isinstance(data, dict):
            raise KeyFetchError("JWKS response is not a JSON object")
        return data


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_key_cache() -> KeyCache:
    return KeyCache(
        {
            Provider.GOOGLE: settings.GOOGLE_JWKS_URL,
            Provider.APPLE: settings.APPLE_JWKS_URL,
        },
        refresh_seconds=settings.JWKS_REFRESH_SECONDS,
        min_refresh_seconds=settings.JWKS_MIN_REFRESH_SECONDS,
        fetch_timeout=settings.JWKS_FETCH_TIMEOUT_SECONDS,
        fetch_retries=settings.JWKS_FETCH_RETRIES,
    )


def clear_key_cache() -> None:
    """Clear the process-wide key cache. Exposed for testing."""
    get_key_cache().clear()
