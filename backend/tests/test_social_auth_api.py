# tests/test_social_auth_api.py
"""
End-to-end tests for POST /auth/google/ and POST /auth/apple/.

Provider keys come from the FakeJWKSEndpoint fixture, storage is in-memory SQLite,
and the verifiers are injected through FastAPI dependency overrides.
"""
from __future__ import annotations

import json
from urllib.error import URLError

import pytest

from app.auth.errors import KeyFetchError
from app.auth.verifiers import GoogleTokenVerifier, get_google_verifier
from app.core.security import verify_token_purpose
from app.models.linked_identity import LinkedIdentity
from app.models.refresh_token import RefreshToken
from app.models.user import User
from app.services.refresh_tokens import get_valid_refresh_token
from app.services.social_login import social_login

USER_FIELDS = {
    "id",
    "user_id",
    "username",
    "email",
    "first_name",
    "last_name",
    "role",
    "user_uid",
    "phone_number",
    "media_data",
    "other_data",
    "user_data",
}


def post_google(client, token):
    return client.post("/auth/google/", json={"id_token": token})


def post_apple(client, token, user=None):
    body = {"identity_token": token}
    if user is not None:
        body["user"] = user
    return client.post("/auth/apple/", json=body)


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


def test_google_first_sign_in_creates_user(client, google_token, db_session):
    res = post_google(client, google_token())
    assert res.status_code == 200, res.text

    data = res.json()
    assert data["access"]
    assert data["refresh"]
    assert set(data["user"]) == USER_FIELDS
    assert data["user"]["email"] == "a@x.com"
    assert data["user"]["username"] == "a@x.com"
    assert data["user"]["first_name"] == "A"
    assert data["user"]["last_name"] == "B"
    assert data["user"]["role"] == "user"
    assert data["user"]["user_id"] == data["user"]["id"]
    assert data["user"]["phone_number"] is None

    assert db_session.query(User).count() == 1
    link = db_session.query(LinkedIdentity).one()
    assert (link.provider, link.subject) == ("google", "g123")


def test_google_repeat_sign_in_returns_same_user(client, google_token, db_session):
    first = post_google(client, google_token()).json()
    second = post_google(client, google_token(given_name="Renamed")).json()

    assert first["user"]["id"] == second["user"]["id"]
    assert second["user"]["first_name"] == "A"
    assert first["refresh"] != second["refresh"]
    assert db_session.query(User).count() == 1
    assert db_session.query(RefreshToken).count() == 2


def test_issued_tokens_belong_to_the_user(client, google_token, db_session):
    data = post_google(client, google_token()).json()
    user_id = data["user"]["id"]

    payload = verify_token_purpose(data["access"], "access")
    assert payload["sub"] == str(user_id)
    assert payload["ver"] == 0

    stored = get_valid_refresh_token(db_session, data["refresh"])
    assert stored is not None
    assert stored.user_id == user_id
    # Only the hash is persisted.
    assert stored.token_hash != data["refresh"]


def test_user_can_be_left_out_of_response(client, google_token, monkeypatch):
    from app.core import config as app_config

    monkeypatch.setattr(app_config.settings, "SOCIAL_AUTH_INCLUDE_USER", False)
    res = post_google(client, google_token())

    assert res.status_code == 200
    assert set(res.json()) == {"access", "refresh"}


# ---------------------------------------------------------------------------
# Apple
# ---------------------------------------------------------------------------


def test_apple_first_sign_in_with_user_object(client, apple_token):
    res = post_apple(
        client,
        apple_token(),
        user={"name": {"firstName": "Jane", "lastName": "Appleseed"}, "email": "jane@example.com"},
    )
    assert res.status_code == 200, res.text

    user = res.json()["user"]
    assert user["first_name"] == "Jane"
    assert user["last_name"] == "Appleseed"
    assert user["email"] == "jane@example.com"


def test_apple_user_object_as_json_string(client, apple_token, db_session):
    raw_user = json.dumps({"name": {"firstName": "Jane", "lastName": "Appleseed"}})
    res = post_apple(client, apple_token(email="jane@privaterelay.appleid.com", email_verified="true"), user=raw_user)
    assert res.status_code == 200, res.text

    user = res.json()["user"]
    assert user["first_name"] == "Jane"
    assert user["email"] == "jane@privaterelay.appleid.com"
    assert db_session.get(User, user["id"]).is_email_verified is True


def test_apple_without_email_or_user_object(client, apple_token):
    res = post_apple(client, apple_token())
    assert res.status_code == 200, res.text

    user = res.json()["user"]
    assert user["email"] is None
    assert user["first_name"] == ""
    assert user["last_name"] == ""
    assert user["username"].startswith("apple_")


def test_apple_later_sign_in_keeps_first_profile(client, apple_token, db_session):
    first = post_apple(client, apple_token(), user={"name": {"firstName": "Jane", "lastName": "Appleseed"}}).json()
    later = post_apple(client, apple_token()).json()

    assert later["user"]["id"] == first["user"]["id"]
    assert later["user"]["first_name"] == "Jane"
    assert later["user"]["last_name"] == "Appleseed"
    assert db_session.query(User).count() == 1


def test_apple_bad_user_string_is_a_validation_error(client, apple_token):
    res = post_apple(client, apple_token(), user="{not json")
    assert res.status_code == 422
    assert res.json()["error"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"iss": "https://evil.example.com"}, "BAD_ISSUER"),
        ({"aud": "someone-else"}, "BAD_AUDIENCE"),
        ({"exp_offset": -60}, "TOKEN_EXPIRED"),
        ({"sub": None}, "MISSING_CLAIM"),
        ({"kid": "nope"}, "UNKNOWN_KEY"),
    ],
)
def test_google_rejections(client, google_token, db_session, overrides, code):
    res = post_google(client, google_token(**overrides))

    assert res.status_code == 401
    assert res.json()["error"] == code
    assert db_session.query(User).count() == 0


def test_bad_signature_is_rejected(client, google_token, rogue_key, db_session):
    res = post_google(client, google_token(key=rogue_key))

    assert res.status_code == 401
    assert res.json()["error"] == "BAD_SIGNATURE"
    assert db_session.query(User).count() == 0


def test_malformed_token(client):
    res = post_google(client, "definitely.not-a.jwt")
    assert res.status_code == 401
    assert res.json()["error"] == "MALFORMED_TOKEN"


def test_non_string_kid_header_is_rejected(client, google_token, db_session):
    res = post_google(client, google_token(kid=["x"]))

    assert res.status_code == 401
    assert res.json()["error"] == "MALFORMED_TOKEN"
    assert db_session.query(User).count() == 0


def test_unexpected_error_uses_error_shape(app, key_cache, google_token):
    from fastapi.testclient import TestClient

    class BrokenVerifier(GoogleTokenVerifier):
        def decode(self, raw_token):
            raise RuntimeError("boom")

    app.dependency_overrides[get_google_verifier] = lambda: BrokenVerifier(key_cache, ["any"])
    with TestClient(app, raise_server_exceptions=False) as c:
        res = post_google(c, google_token())

    assert res.status_code == 500
    assert res.json() == {"error": "INTERNAL_ERROR"}


def test_apple_token_is_not_accepted_by_google_endpoint(client, apple_token):
    res = post_google(client, apple_token())
    assert res.status_code == 401


def test_error_detail_can_be_hidden(client, google_token, monkeypatch):
    from app.core import config as app_config

    res = post_google(client, google_token(aud="someone-else"))
    assert "detail" in res.json()

    monkeypatch.setattr(app_config.settings, "AUTH_ERROR_DETAIL", False)
    res = post_google(client, google_token(aud="someone-else"))
    assert res.status_code == 401
    assert res.json() == {"error": "BAD_AUDIENCE"}


def test_key_fetch_failure_is_service_unavailable(client, google_token, jwks_endpoint, db_session):
    jwks_endpoint.error = URLError("connection refused")
    res = post_google(client, google_token())

    assert res.status_code == 503
    assert res.json()["error"] == "KEY_FETCH_FAILED"
    assert res.headers["Retry-After"] == "1"
    assert db_session.query(User).count() == 0


def test_key_fetch_timeout(client, apple_token, jwks_endpoint):
    jwks_endpoint.error = TimeoutError("timed out")
    res = post_apple(client, apple_token())

    assert res.status_code == 503
    assert res.json()["error"] == "TIMEOUT"


def test_provider_not_configured(app, client, key_cache, google_token):
    app.dependency_overrides[get_google_verifier] = lambda: GoogleTokenVerifier(key_cache, [])
    res = post_google(client, google_token())

    assert res.status_code == 503
    assert res.json()["error"] == "PROVIDER_NOT_CONFIGURED"


def test_email_collision_is_conflict(client, google_token, db_session):
    db_session.add(
        User(
            user_uid="00000000-0000-0000-0000-000000000001",
            username="a@x.com",
            email="a@x.com",
            password_hash="argon2$not-a-real-hash",
        )
    )
    db_session.commit()

    res = post_google(client, google_token())

    assert res.status_code == 409
    assert res.json()["error"] == "CONFLICT"
    assert db_session.query(LinkedIdentity).count() == 0


def test_apple_user_email_cannot_claim_existing_account(client, apple_token, db_session, monkeypatch):
    from app.core import config as app_config

    monkeypatch.setattr(app_config.settings, "SOCIAL_EMAIL_COLLISION_POLICY", "link")
    victim = User(
        user_uid="00000000-0000-0000-0000-000000000002",
        username="victim@x.com",
        email="victim@x.com",
        password_hash="argon2$not-a-real-hash",
    )
    db_session.add(victim)
    db_session.commit()

    # Valid Apple token without an email; the unsigned `user` object names the victim.
    res = post_apple(client, apple_token(sub="attacker-sub"), user={"email": "victim@x.com"})

    assert res.status_code == 409
    assert res.json()["error"] == "CONFLICT"
    assert db_session.query(LinkedIdentity).count() == 0


def test_inactive_user_is_forbidden(client, google_token, db_session):
    user_id = post_google(client, google_token()).json()["user"]["id"]
    user = db_session.get(User, user_id)
    user.is_active = False
    db_session.commit()

    res = post_google(client, google_token())

    assert res.status_code == 403
    assert res.json()["error"] == "FORBIDDEN"


@pytest.mark.parametrize("body", [{}, {"id_token": ""}, {"token": "x"}])
def test_google_payload_validation(client, body):
    res = client.post("/auth/google/", json=body)

    assert res.status_code == 422
    data = res.json()
    assert data["error"] == "VALIDATION_ERROR"
    assert "id_token" in data["detail"]


def test_apple_payload_validation(client):
    res = client.post("/auth/apple/", json={"user": {"email": "x@y.com"}})
    assert res.status_code == 422
    assert "identity_token" in res.json()["detail"]


def test_unknown_route_uses_error_shape(client):
    res = client.get("/auth/facebook/")
    assert res.status_code == 404
    assert res.json()["error"] == "NOT_FOUND"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def test_social_login_returns_user_and_tokens(db_session, google_verifier, google_token):
    result = social_login(db_session, google_verifier, google_token())

    assert result.user.email == "a@x.com"
    assert verify_token_purpose(result.tokens.access, "access")["sub"] == str(result.user.id)


def test_session_issuer_failure_propagates(db_session, google_verifier, google_token):
    def broken_issuer(db, user):
        raise RuntimeError("signing key unavailable")

    with pytest.raises(RuntimeError, match="signing key unavailable"):
        social_login(db_session, google_verifier, google_token(), issue_session=broken_issuer)


def test_verification_failure_stops_before_storage(db_session, google_verifier, google_token, jwks_endpoint):
    jwks_endpoint.error = URLError("down")

    with pytest.raises(KeyFetchError):
        social_login(db_session, google_verifier, google_token())
    assert db_session.query(User).count() == 0
