from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import jwt
from sqlalchemy import func, select

from conftest import auth_headers
from shortener.auth import decode_access_token
from shortener.models import User


def login(client):
    res = client.get("/auth/google")
    assert res.status_code == 302
    state = parse_qs(urlparse(res.headers["location"]).query)["state"][0]
    return client.get("/auth/google/callback", params={"code": "auth-code", "state": state})


def test_login_redirects_to_google_with_state_cookie(client):
    res = client.get("/auth/google")
    assert res.status_code == 302
    assert res.headers["location"].startswith("https://accounts.example.com/auth?state=")
    assert "oauth_state" in res.cookies


def test_callback_creates_user_and_sets_token(app, client):
    res = login(client)
    assert res.status_code == 302
    assert res.headers["location"] == "http://frontend.test"

    token = res.cookies["token"]
    user_id = decode_access_token(token, app.state.settings)
    payload = jwt.decode(token, "test-secret", algorithms=["HS256"])
    assert payload["exp"] - payload["iat"] == 7 * 24 * 60 * 60

    with app.state.session_factory() as db:
        user = db.get(User, user_id)
        assert user.email == "ada@example.com"
        assert user.google_id == "g-123"
        assert app.state.google.codes == ["auth-code"]


def test_second_login_updates_last_login(app, client):
    login(client)
    with app.state.session_factory() as db:
        first = db.scalar(select(User)).last_login_at

    app.state.google.profile = replace(app.state.google.profile, name="Ada King", picture=None)
    login(client)
    with app.state.session_factory() as db:
        assert db.scalar(select(func.count()).select_from(User)) == 1
        user = db.scalar(select(User))
        assert user.name == "Ada King"
        assert user.last_login_at >= first


def test_callback_rejects_bad_state(client):
    client.get("/auth/google")
    res = client.get("/auth/google/callback", params={"code": "x", "state": "forged"})
    assert res.status_code == 401
    assert res.json() == {"message": "Authentication failed"}


def test_check_and_profile_with_cookie(client):
    login(client)
    res = client.get("/auth/check")
    assert res.status_code == 200
    assert res.json()["user"]["email"] == "ada@example.com"

    res = client.get("/auth/profile")
    assert res.status_code == 200
    assert res.json()["user"]["name"] == "Ada Lovelace"
    assert "lastLoginAt" in res.json()["user"]


def test_profile_for_unknown_user(app, client):
    headers = auth_headers(app, 999)
    assert client.get("/auth/profile", headers=headers).status_code == 404
    assert client.get("/auth/check", headers=headers).status_code == 401


def test_check_requires_token(client):
    res = client.get("/auth/check")
    assert res.status_code == 401
    assert res.json() == {"message": "Unauthorized: Please log in"}


def test_logout(client):
    assert client.post("/auth/logout").status_code == 400

    login(client)
    res = client.post("/auth/logout")
    assert res.status_code == 200
    assert res.json() == {"message": "Logged out successfully"}
    assert client.get("/auth/check").status_code == 401


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"
