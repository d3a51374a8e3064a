from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Request

from shortener.config import Settings
from shortener.errors import NotAuthenticated

TOKEN_COOKIE = "token"
ALGORITHM = "HS256"


def create_access_token(user_id: int, settings: Settings, now: datetime | None = None) -> str:
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": issued,
        "exp": issued + timedelta(days=settings.jwt_expires_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def decode_access_token(token: str, settings: Settings) -> int:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise NotAuthenticated("Session expired, please log in again")
    except jwt.InvalidTokenError:
        raise NotAuthenticated("Invalid token")

    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise NotAuthenticated("Invalid token")


def token_from_request(request: Request) -> str | None:
    """Cookie first, then an Authorization: Bearer header."""
    token = request.cookies.get(TOKEN_COOKIE)
    if token:
        return token
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def current_user_id(request: Request) -> int:
    token = token_from_request(request)
    if not token:
        raise NotAuthenticated()
    return decode_access_token(token, request.app.state.settings)
