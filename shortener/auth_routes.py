from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from shortener.auth import TOKEN_COOKIE, create_access_token, current_user_id, token_from_request
from shortener.db import get_db
from shortener.errors import NotAuthenticated, NotFound
from shortener.google import GoogleAuthError, GoogleProfile
from shortener.models import User
from shortener.schemas import MessageResponse, UserEnvelope, UserOut
from shortener.service import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

STATE_COOKIE = "oauth_state"


def upsert_google_user(db: Session, profile: GoogleProfile) -> User:
    """
    First login creates the user, later logins refresh profile and last login.
    """
    now = utcnow()
    user = db.scalar(select(User).where(User.google_id == profile.google_id))
    if user is None:
        user = User(
            google_id=profile.google_id,
            email=profile.email,
            name=profile.name,
            picture=profile.picture,
            created_at=now,
            last_login_at=now,
        )
        db.add(user)
        logger.info("new user %s signed up", profile.email)
    else:
        user.email = profile.email
        user.name = profile.name
        user.picture = profile.picture
        user.last_login_at = now
    db.commit()
    db.refresh(user)
    return user


@router.get("/google", include_in_schema=False)
def google_login(request: Request) -> RedirectResponse:
    state = secrets.token_urlsafe(24)
    response = RedirectResponse(url=request.app.state.google.authorization_url(state), status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=600,
        httponly=True,
        samesite="lax",
        secure=request.app.state.settings.cookie_secure,
    )
    return response


@router.get("/google/callback", include_in_schema=False)
def google_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    db: Session = Depends(get_db),
) -> RedirectResponse:
    settings = request.app.state.settings
    expected = request.cookies.get(STATE_COOKIE)
    if not code or not state or not expected or not secrets.compare_digest(state, expected):
        raise NotAuthenticated("Authentication failed")

    try:
        profile = request.app.state.google.fetch_profile(code)
    except GoogleAuthError as e:
        raise NotAuthenticated(str(e))

    user = upsert_google_user(db, profile)
    token = create_access_token(user.id, settings)

    response = RedirectResponse(url=settings.client_url, status_code=302)
    response.delete_cookie(STATE_COOKIE)
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        max_age=settings.jwt_expires_days * 24 * 60 * 60,
        httponly=True,
        samesite="none" if settings.cookie_secure else "lax",
        secure=settings.cookie_secure,
    )
    return response


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    if not token_from_request(request):
        return JSONResponse({"message": "No token provided"}, status_code=400)
    settings = request.app.state.settings
    response = JSONResponse({"message": "Logged out successfully"})
    response.delete_cookie(
        TOKEN_COOKIE,
        samesite="none" if settings.cookie_secure else "lax",
        secure=settings.cookie_secure,
    )
    return response


@router.get("/check", response_model=UserEnvelope)
def check(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)) -> UserEnvelope:
    user = db.get(User, user_id)
    if user is None:
        raise NotAuthenticated("Please log in to continue")
    return UserEnvelope(user=UserOut.model_validate(user, from_attributes=True))


@router.get("/profile", response_model=UserEnvelope)
def profile(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)) -> UserEnvelope:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return UserEnvelope(user=UserOut.model_validate(user, from_attributes=True))
