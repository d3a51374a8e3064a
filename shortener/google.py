from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


class GoogleAuthError(Exception):
    pass


@dataclass(frozen=True)
class GoogleProfile:
    google_id: str
    email: str
    name: str
    picture: str | None


class GoogleOAuthClient:
    """Authorization-code flow against Google's OAuth 2.0 endpoints."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, timeout: float = 10) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.http = requests.Session()

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def fetch_profile(self, code: str) -> GoogleProfile:
        try:
            token_resp = self.http.post(
                TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
                timeout=self.timeout,
            )
            token_resp.raise_for_status()
            access_token = token_resp.json()["access_token"]

            info_resp = self.http.get(
                USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
            info_resp.raise_for_status()
            info = info_resp.json()
        except (requests.RequestException, KeyError, ValueError) as e:
            logger.warning("Google code exchange failed: %s", e)
            raise GoogleAuthError("Authentication failed") from e

        if not info.get("sub") or not info.get("email"):
            raise GoogleAuthError("Google profile is missing id or email")

        return GoogleProfile(
            google_id=str(info["sub"]),
            email=info["email"],
            name=info.get("name") or info["email"],
            picture=info.get("picture"),
        )

    def close(self) -> None:
        self.http.close()
