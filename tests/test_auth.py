from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

import auth
import main
from database import utcnow


@pytest.fixture
def google_configured(monkeypatch):
    monkeypatch.setattr(auth, "GOOGLE_CLIENT_ID", "client-123")


def test_current_user_with_bearer_token(client, make_user):
    user_id, headers = make_user()
    resp = client.get("/auth/current-user", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["_id"] == user_id
    assert body["email"] == "jane@example.com"
    assert body["isPremium"] is False


def test_current_user_with_session_cookie(client, make_user):
    user_id, headers = make_user()
    token = headers["Authorization"].split(" ", 1)[1]
    client.cookies.set("session", token)
    resp = client.get("/auth/current-user")
    assert resp.status_code == 200
    assert resp.json()["_id"] == user_id


def test_current_user_unauthorized(client):
    assert client.get("/auth/current-user").status_code == 401
    assert client.get("/auth/current-user", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/auth/current-user", headers={"Authorization": "Basic abc"}).status_code == 401


def test_expired_session_is_rejected(client, mongo, make_user):
    _, headers = make_user()
    mongo["session"].update_many({}, {"$set": {"expiresAt": utcnow() - timedelta(minutes=1)}})
    assert client.get("/auth/current-user", headers=headers).status_code == 401


def test_logout_deletes_session(client, mongo, make_user):
    _, headers = make_user()
    resp = client.post("/auth/logout", headers=headers)
    assert resp.status_code == 200
    assert mongo["session"].count_documents({}) == 0
    assert client.get("/auth/current-user", headers=headers).status_code == 401


def test_google_login_redirects_with_state(client, google_configured):
    resp = client.get("/auth/google", follow_redirects=False)
    assert resp.status_code == 302
    location = urlparse(resp.headers["location"])
    assert location.netloc == "accounts.google.com"
    query = parse_qs(location.query)
    assert query["client_id"] == ["client-123"]
    assert query["scope"] == ["openid email profile"]
    assert resp.cookies.get(auth.STATE_COOKIE) == query["state"][0]


def test_google_login_not_configured(client, monkeypatch):
    monkeypatch.setattr(auth, "GOOGLE_CLIENT_ID", None)
    assert client.get("/auth/google", follow_redirects=False).status_code == 503


def test_google_callback_creates_user_and_session(client, mongo, monkeypatch):
    profile = {"sub": "g-42", "email": "sam@example.com", "name": "Sam", "picture": "https://img/sam.png"}
    monkeypatch.setattr(main, "fetch_google_profile", lambda code: profile)
    client.cookies.set(auth.STATE_COOKIE, "xyz")

    resp = client.get("/auth/google/callback?code=abc&state=xyz", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"].endswith("/dashboard")
    token = resp.cookies.get(auth.SESSION_COOKIE)
    assert token

    user = mongo["user"].find_one({"googleId": "g-42"})
    assert user["email"] == "sam@example.com"
    assert user["displayName"] == "Sam"
    assert user["isPremium"] is False

    me = client.get("/auth/current-user", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["email"] == "sam@example.com"

    # signing in again reuses the same user
    client.cookies.set(auth.STATE_COOKIE, "xyz")
    client.get("/auth/google/callback?code=abc&state=xyz", follow_redirects=False)
    assert mongo["user"].count_documents({"googleId": "g-42"}) == 1


def test_google_callback_rejects_state_mismatch(client, mongo, monkeypatch):
    monkeypatch.setattr(main, "fetch_google_profile", lambda code: pytest.fail("should not exchange code"))
    client.cookies.set(auth.STATE_COOKIE, "expected")
    resp = client.get("/auth/google/callback?code=abc&state=forged", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"].endswith("/login")
    assert mongo["user"].count_documents({}) == 0


def test_google_callback_token_exchange_failure(client, mongo, monkeypatch):
    def boom(code):
        raise auth.OAuthError("invalid_grant")

    monkeypatch.setattr(main, "fetch_google_profile", boom)
    client.cookies.set(auth.STATE_COOKIE, "xyz")
    resp = client.get("/auth/google/callback?code=abc&state=xyz", follow_redirects=False)
    assert resp.headers["location"].endswith("/login")
    assert mongo["session"].count_documents({}) == 0


def test_routes_answer_503_without_database(monkeypatch, redis_store):
    import database
    from fastapi.testclient import TestClient

    monkeypatch.setattr(database, "db", None)
    resp = TestClient(main.app).get("/auth/current-user", headers={"Authorization": "Bearer t"})
    assert resp.status_code == 503
