"""Google OAuth connection flow for meeting-type owners.

The owner visits ``/oauth/google/start``, consents, and Google redirects
back with a code that we exchange for tokens here.  Refreshing tokens
after expiry is left to the Google client library at call time; refreshed
tokens are not written back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from setthetime.errors import InvalidInput, UpstreamFailure
from setthetime.store.base import TokenBundle

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
SCOPES = ["https://www.googleapis.com/auth/calendar"]

STATE_SALT = "setthetime-oauth-state"
STATE_MAX_AGE = 600


def _state_serializer(secret: str) -> URLSafeTimedSerializer:
    if not secret:
        raise InvalidInput("OAUTH_STATE_SECRET is not configured")
    return URLSafeTimedSerializer(secret)


def sign_state(owner_id: str, secret: str) -> str:
    """Opaque, time-limited ``state`` naming the owner being connected."""
    return _state_serializer(secret).dumps({"owner": owner_id}, salt=STATE_SALT)


def verify_state(state: str, secret: str, max_age: int = STATE_MAX_AGE) -> str:
    """Owner id carried by a ``state`` issued by ``sign_state``.

    Raises InvalidInput when the state is missing, tampered with or older
    than ``max_age`` seconds.
    """
    if not state:
        raise InvalidInput("Missing state")
    serializer = _state_serializer(secret)
    try:
        data = serializer.loads(state, salt=STATE_SALT, max_age=max_age)
    except SignatureExpired:
        logger.warning("Rejected expired OAuth state")
        raise InvalidInput("OAuth state expired; start the connection again")
    except BadSignature:
        logger.warning("Rejected OAuth state with a bad signature")
        raise InvalidInput("Invalid OAuth state")
    owner_id = data.get("owner") if isinstance(data, dict) else None
    if not owner_id:
        raise InvalidInput("Invalid OAuth state")
    return owner_id


def build_authorization_url(
    client_id: str, redirect_uri: str, state: str = ""
) -> str:
    """Consent URL asking for offline calendar access."""
    if not client_id:
        raise InvalidInput("Google OAuth is not configured")
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        "prompt": "consent",
    }
    if state:
        params["state"] = state
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code(
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> TokenBundle:
    """Exchange an authorization code for a TokenBundle."""
    if not code:
        raise InvalidInput("Missing code")

    data = {
        "code": code,
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_uri": redirect_uri,
        "grant_type": "authorization_code",
    }
    try:
        if http_client is not None:
            resp = await http_client.post(GOOGLE_TOKEN_URL, data=data)
        else:
            async with httpx.AsyncClient(timeout=15) as client:
                resp = await client.post(GOOGLE_TOKEN_URL, data=data)
    except httpx.HTTPError as exc:
        raise UpstreamFailure(f"Token endpoint unreachable: {exc}") from exc

    if resp.status_code != 200:
        logger.error("Token exchange failed: %s", resp.text)
        raise UpstreamFailure("Failed to exchange authorization code")

    tokens = resp.json()
    access_token = tokens.get("access_token")
    if not access_token:
        raise UpstreamFailure("No access token in token response")

    expires_in = int(tokens.get("expires_in", 3600))
    return TokenBundle(
        access_token=access_token,
        refresh_token=tokens.get("refresh_token"),
        expiry=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        scope=str(tokens.get("scope") or " ".join(SCOPES)),
    )
