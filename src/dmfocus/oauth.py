"""Summary: Instagram OAuth helpers.

Importance: Builds the authorization URL, signs CSRF state, and exchanges codes without extra dependencies.
Alternatives: Use a provider SDK or an OAuth client library.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import urllib.parse
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from dmfocus.config import AppConfig
from dmfocus.errors import ProviderError
from dmfocus.httpclient import post_form


INSTAGRAM_SCOPES = (
    "instagram_business_basic,"
    "instagram_business_manage_messages,"
    "instagram_business_manage_comments"
)
STATE_MAX_AGE_SECONDS = 600


@dataclass(frozen=True)
class OAuthTokenResult:
    """Summary: Normalized token exchange response.

    Importance: Separates the access token from the Instagram user ID returned alongside it.
    Alternatives: Pass the raw provider response around.
    """

    access_token: str
    user_id: str | None
    raw: dict[str, Any]

    @staticmethod
    def from_response(payload: dict[str, Any]) -> "OAuthTokenResult":
        """Summary: Build an OAuthTokenResult from the exchange payload.

        Importance: Instagram may wrap the token in a one-element data list.
        Alternatives: Handle each response shape at the call site.
        """

        body = payload
        if isinstance(payload.get("data"), list) and payload["data"]:
            body = payload["data"][0]
        access_token = body.get("access_token")
        if not access_token:
            raise ProviderError("Instagram token exchange returned no access token")
        user_id = body.get("user_id")
        return OAuthTokenResult(
            access_token=str(access_token),
            user_id=str(user_id) if user_id is not None else None,
            raw=payload,
        )


def create_state_token(secret: str, user_id: int, issued_at: datetime) -> str:
    """Summary: Generate a signed CSRF state token bound to a user.

    Importance: Lets the exchange step reject forged or replayed-late callbacks without server-side storage.
    Alternatives: Persist random state values in a table.
    """

    nonce = secrets.token_urlsafe(12)
    body = f"{user_id}.{int(issued_at.timestamp())}.{nonce}"
    return f"{body}.{_sign(secret, body)}"


def verify_state_token(
    secret: str,
    state: str,
    user_id: int,
    now: datetime,
    max_age_seconds: int = STATE_MAX_AGE_SECONDS,
) -> bool:
    """Summary: Check a state token's signature, owner, and age."""

    parts = state.split(".")
    if len(parts) != 4:
        return False
    state_user, issued, _, signature = parts
    body = ".".join(parts[:3])
    if not hmac.compare_digest(signature, _sign(secret, body)):
        return False
    if state_user != str(user_id) or not issued.isdigit():
        return False
    age = int(now.timestamp()) - int(issued)
    return 0 <= age <= max_age_seconds


def build_instagram_auth_url(config: AppConfig, redirect_uri: str, state: str) -> str:
    """Summary: Build the Instagram business login authorization URL.

    Importance: Requests messaging scopes needed for webhooks and replies.
    Alternatives: Use Facebook Login for Business.
    """

    params = {
        "client_id": config.instagram_app_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": INSTAGRAM_SCOPES,
        "state": state,
    }
    base = config.instagram_oauth_base_url.rstrip("/")
    return f"{base}/oauth/authorize?" + urllib.parse.urlencode(params)


def exchange_instagram_code(config: AppConfig, code: str, redirect_uri: str) -> OAuthTokenResult:
    """Summary: Exchange an authorization code for an Instagram access token.

    Importance: Completes the connection flow.
    Alternatives: Use provider SDKs or external auth services.
    """

    if not config.instagram_app_id or not config.instagram_app_secret:
        raise ValueError("Missing Instagram app credentials")
    base = config.instagram_oauth_base_url.rstrip("/")
    response = post_form(
        f"{base}/oauth/access_token",
        {
            "client_id": config.instagram_app_id,
            "client_secret": config.instagram_app_secret,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
            "code": code,
        },
        timeout=config.http_timeout_seconds,
        service="Instagram token exchange",
    )
    return OAuthTokenResult.from_response(response)


def _sign(secret: str, body: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()
