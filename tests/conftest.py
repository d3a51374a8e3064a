from dataclasses import replace
from datetime import datetime, timezone

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from shortener.auth import create_access_token
from shortener.config import Settings
from shortener.google import GoogleProfile
from shortener.main import create_app
from shortener.models import User

BASE_SETTINGS = Settings(
    database_url="sqlite://",
    redis_url="redis://unused",
    base_url="http://short.test",
    client_url="http://frontend.test",
    code_length=6,
    default_expiry_days=0,
    cache_enabled=True,
    rate_limit_per_hour=10,
    rate_limit_window_seconds=3600,
    jwt_secret="test-secret",
    jwt_expires_days=7,
    google_client_id="client-id",
    google_client_secret="client-secret",
    google_redirect_uri="http://short.test/auth/google/callback",
    log_level="WARNING",
)

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
SAFARI_IPAD = (
    "Mozilla/5.0 (iPad; CPU OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1"
)


class FakeGoogle:
    def __init__(self) -> None:
        self.profile = GoogleProfile(
            google_id="g-123",
            email="ada@example.com",
            name="Ada Lovelace",
            picture="https://example.com/ada.png",
        )
        self.codes: list[str] = []

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.example.com/auth?state={state}"

    def fetch_profile(self, code: str) -> GoogleProfile:
        self.codes.append(code)
        return self.profile

    def close(self) -> None:
        pass


def make_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def settings():
    return BASE_SETTINGS


@pytest.fixture
def app(settings, redis_client):
    return create_app(settings, engine=make_engine(), redis_client=redis_client, google_client=FakeGoogle())


@pytest.fixture
def client(app):
    with TestClient(app, follow_redirects=False) as c:
        yield c


def add_user(app, google_id: str = "g-1", email: str = "user@example.com") -> User:
    now = datetime.now(timezone.utc)
    with app.state.session_factory() as db:
        user = User(google_id=google_id, email=email, name=email.split("@")[0], created_at=now, last_login_at=now)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user


def auth_headers(app, user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, app.state.settings)}"}


@pytest.fixture
def user(app, client):
    return add_user(app)


@pytest.fixture
def headers(app, user):
    return auth_headers(app, user.id)


def settings_with(**changes) -> Settings:
    return replace(BASE_SETTINGS, **changes)
