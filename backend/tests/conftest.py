import os

# Settings are read at import time; make the app importable without a real DB or providers.
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_IDS", "test-google-client.apps.googleusercontent.com")
os.environ.setdefault("APPLE_CLIENT_IDS", "com.example.web,com.example.ios")

import base64
import io
import json
import threading
import time

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth.claims import Provider
from app.auth.jwks import KeyCache
from app.auth.verifiers import (
    APPLE_ISSUER,
    AppleTokenVerifier,
    GoogleTokenVerifier,
    get_apple_verifier,
    get_google_verifier,
)
from app.core import config as app_config
from app.core.base import Base
from app.core.database import get_db

# Import models so they register with SQLAlchemy metadata.
from app.models.user import User  # noqa: F401
from app.models.linked_identity import LinkedIdentity  # noqa: F401
from app.models.refresh_token import RefreshToken  # noqa: F401


GOOGLE_JWKS_URL = "https://keys.test/google/certs"
APPLE_JWKS_URL = "https://keys.test/apple/keys"
GOOGLE_CLIENT_ID = "test-google-client.apps.googleusercontent.com"
APPLE_CLIENT_ID = "com.example.web"
GOOGLE_ISSUER = "https://accounts.google.com"


# ---------------------------------------------------------------------------
# Key / token helpers
# ---------------------------------------------------------------------------


def generate_rsa_key_pair():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def private_key_to_pem(private_key) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_to_jwk(private_key, kid: str) -> dict:
    public_numbers = private_key.public_key().public_numbers()

    def int_to_base64url(n: int, length: int) -> str:
        return base64.urlsafe_b64encode(n.to_bytes(length, "big")).decode("utf-8").rstrip("=")

    return {
        "kty": "RSA",
        "kid": kid,
        "use": "sig",
        "alg": "RS256",
        "n": int_to_base64url(public_numbers.n, 256),
        "e": int_to_base64url(public_numbers.e, 3),
    }


def sign_token(private_key, kid: str | None, claims: dict) -> str:
    headers = {"kid": kid} if kid else None
    return jwt.encode(claims, private_key_to_pem(private_key), algorithm="RS256", headers=headers)


class FakeJWKSEndpoint:
    """Stands in for urlopen: serves published JWKS documents and records fetches."""

    def __init__(self) -> None:
        self.documents: dict[str, dict] = {}
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.delay = 0.0
        self._lock = threading.Lock()

    def publish(self, url: str, *signers: tuple) -> None:
        self.documents[url] = {"keys": [public_key_to_jwk(key, kid) for key, kid in signers]}

    def calls_for(self, url: str) -> int:
        return sum(1 for u in self.calls if u == url)

    def __call__(self, url, timeout=None, context=None):  # noqa: ARG002
        with self._lock:
            self.calls.append(url)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return io.BytesIO(json.dumps(self.documents[url]).encode("utf-8"))


@pytest.fixture(scope="session")
def google_key():
    return generate_rsa_key_pair()


@pytest.fixture(scope="session")
def apple_key():
    return generate_rsa_key_pair()


@pytest.fixture(scope="session")
def rogue_key():
    return generate_rsa_key_pair()


@pytest.fixture()
def jwks_endpoint(monkeypatch, google_key, apple_key):
    endpoint = FakeJWKSEndpoint()
    endpoint.publish(GOOGLE_JWKS_URL, (google_key, "google-kid-1"))
    endpoint.publish(APPLE_JWKS_URL, (apple_key, "apple-kid-1"))
    monkeypatch.setattr("app.auth.jwks.urlopen", endpoint)
    return endpoint


@pytest.fixture(autouse=True)
def clear_process_key_cache():
    """Clear the process-wide key cache before and after each test."""
    from app.auth.jwks import clear_key_cache

    clear_key_cache()
    yield
    clear_key_cache()


@pytest.fixture()
def key_cache(jwks_endpoint):
    return KeyCache(
        {Provider.GOOGLE: GOOGLE_JWKS_URL, Provider.APPLE: APPLE_JWKS_URL},
        refresh_seconds=3600,
        min_refresh_seconds=0,
        fetch_timeout=1,
        fetch_retries=0,
    )


@pytest.fixture()
def google_verifier(key_cache):
    return GoogleTokenVerifier(key_cache, [GOOGLE_CLIENT_ID])


@pytest.fixture()
def apple_verifier(key_cache):
    return AppleTokenVerifier(key_cache, ["com.example.web", "com.example.ios"])


@pytest.fixture()
def google_token(google_key):
    """Factory for Google ID tokens; keyword args override claims."""

    def _make(*, kid: str | None = "google-kid-1", key=None, exp_offset: int = 3600, **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": GOOGLE_ISSUER,
            "aud": GOOGLE_CLIENT_ID,
            "sub": "g123",
            "email": "a@x.com",
            "email_verified": True,
            "given_name": "A",
            "family_name": "B",
            "iat": now,
            "exp": now + exp_offset,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return sign_token(key or google_key, kid, claims)

    return _make


@pytest.fixture()
def apple_token(apple_key):
    """Factory for Apple identity tokens; keyword args override claims."""

    def _make(*, kid: str | None = "apple-kid-1", key=None, exp_offset: int = 600, **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": APPLE_ISSUER,
            "aud": APPLE_CLIENT_ID,
            "sub": "001234.abcdef.0987",
            "iat": now,
            "exp": now + exp_offset,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return sign_token(key or apple_key, kid, claims)

    return _make


# ---------------------------------------------------------------------------
# Database / app
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # The in-memory DB persists across tests (StaticPool); reset schema per test.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """Restore process-global settings that tests tweak."""
    keys = [
        "SOCIAL_AUTH_INCLUDE_USER",
        "SOCIAL_EMAIL_COLLISION_POLICY",
        "AUTH_ERROR_DETAIL",
        "STORAGE_RETRIES",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


@pytest.fixture()
def app(db_session, google_verifier, apple_verifier):
    app_config.settings.JWT_SECRET = app_config.settings.JWT_SECRET or "test_jwt_secret"

    from app.main import app as fastapi_app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_google_verifier] = lambda: google_verifier
    fastapi_app.dependency_overrides[get_apple_verifier] = lambda: apple_verifier
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c
