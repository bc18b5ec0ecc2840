"""
OAuth connect flow for publishing platforms.

authorize_url() builds the provider consent URL with a signed state
(`user_id.issued_at.hmac`); exchange_code() trades the callback code for a
TokenSet that the caller stores through the CredentialStore.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
from urllib.parse import urlencode

import httpx

from reelcast.models import Platform
from reelcast.services.credential_store import TokenSet
from reelcast.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class OAuthError(Exception):
    pass


class InvalidOAuthState(OAuthError):
    pass


@dataclass(frozen=True)
class OAuthProvider:
    authorize_url: str
    token_url: str
    scope: str
    scope_separator: str = " "


PROVIDERS: dict[Platform, OAuthProvider] = {
    Platform.youtube: OAuthProvider(
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        scope="https://www.googleapis.com/auth/youtube.upload https://www.googleapis.com/auth/youtube",
    ),
    Platform.tiktok: OAuthProvider(
        authorize_url="https://www.tiktok.com/v2/auth/authorize/",
        token_url="https://open.tiktokapis.com/v2/oauth/token/",
        scope="user.info.basic,video.upload,video.publish",
        scope_separator=",",
    ),
    Platform.instagram: OAuthProvider(
        authorize_url="https://www.facebook.com/v18.0/dialog/oauth",
        token_url="https://graph.facebook.com/v18.0/oauth/access_token",
        scope="instagram_basic,instagram_content_publish,pages_show_list,pages_read_engagement",
        scope_separator=",",
    ),
}

GRAPH_URL = "https://graph.facebook.com/v18.0"


# ── Signed state ─────────────────────────────────────────────

def _state_signature(secret: str, message: str) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def sign_state(user_id: int, *, secret: str | None = None, now: float | None = None) -> str:
    secret = secret or get_settings().oauth_state_secret
    issued = int(now if now is not None else time.time())
    message = f"{user_id}.{issued}"
    return f"{message}.{_state_signature(secret, message)}"


def verify_state(
    state: str,
    *,
    secret: str | None = None,
    max_age_sec: int | None = None,
    now: float | None = None,
) -> int:
    """Return the user id carried by a valid state, else raise InvalidOAuthState."""
    settings = get_settings()
    secret = secret or settings.oauth_state_secret
    max_age_sec = settings.oauth_state_max_age_sec if max_age_sec is None else max_age_sec

    parts = (state or "").split(".")
    if len(parts) != 3:
        raise InvalidOAuthState("Malformed OAuth state")
    user_part, issued_part, signature = parts
    if not hmac.compare_digest(_state_signature(secret, f"{user_part}.{issued_part}"), signature):
        raise InvalidOAuthState("OAuth state signature mismatch")
    try:
        user_id, issued = int(user_part), int(issued_part)
    except ValueError as exc:
        raise InvalidOAuthState("Malformed OAuth state") from exc
    current = now if now is not None else time.time()
    if current - issued > max_age_sec or issued - current > 60:
        raise InvalidOAuthState("OAuth state expired")
    return user_id


# ── Provider URLs / exchange ─────────────────────────────────

def redirect_uri(platform: Platform, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    base = (settings.oauth_redirect_base_url or settings.public_base_url).rstrip("/")
    return f"{base}/api/oauth/{platform.value}/callback"


def _provider(platform: Platform) -> OAuthProvider:
    provider = PROVIDERS.get(platform)
    if provider is None:
        raise OAuthError(f"OAuth connect is not supported for {platform.value}")
    return provider


def authorize_url(platform: Platform, user_id: int) -> str:
    settings = get_settings()
    provider = _provider(platform)
    state = sign_state(user_id)
    params: dict[str, str] = {
        "redirect_uri": redirect_uri(platform, settings),
        "response_type": "code",
        "scope": provider.scope,
        "state": state,
    }
    if platform == Platform.youtube:
        if not settings.youtube_client_id:
            raise OAuthError("YOUTUBE_CLIENT_ID is not configured")
        params.update(client_id=settings.youtube_client_id, access_type="offline", prompt="consent")
    elif platform == Platform.tiktok:
        if not settings.tiktok_client_key:
            raise OAuthError("TIKTOK_CLIENT_KEY is not configured")
        params["client_key"] = settings.tiktok_client_key
    else:
        if not settings.instagram_app_id:
            raise OAuthError("INSTAGRAM_APP_ID is not configured")
        params["client_id"] = settings.instagram_app_id
    return f"{provider.authorize_url}?{urlencode(params)}"


def _expires(body: dict) -> datetime | None:
    expires_in = body.get("expires_in")
    if not expires_in:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


def _body(resp: httpx.Response, platform: Platform) -> dict:
    if resp.status_code >= 300:
        raise OAuthError(f"{platform.value} token exchange failed: HTTP {resp.status_code}")
    try:
        body = resp.json()
    except ValueError as exc:
        raise OAuthError(f"{platform.value} token exchange returned a non-JSON body") from exc
    if not isinstance(body, dict) or not body.get("access_token"):
        error = body.get("error_description") or body.get("error") if isinstance(body, dict) else None
        raise OAuthError(f"{platform.value} token exchange returned no access token ({error})")
    return body


async def exchange_code(
    platform: Platform,
    code: str,
    *,
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> TokenSet:
    settings = get_settings()
    provider = _provider(platform)
    factory = client_factory or (lambda: httpx.AsyncClient(timeout=settings.http_timeout_sec))
    uri = redirect_uri(platform, settings)

    try:
        async with factory() as client:
            if platform == Platform.youtube:
                resp = await client.post(provider.token_url, data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": settings.youtube_client_id or "",
                    "client_secret": settings.youtube_client_secret or "",
                    "redirect_uri": uri,
                })
                body = _body(resp, platform)
                return TokenSet(
                    access_token=body["access_token"],
                    refresh_token=body.get("refresh_token"),
                    expires_at=_expires(body),
                    scope=body.get("scope"),
                )

            if platform == Platform.tiktok:
                resp = await client.post(provider.token_url, data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_key": settings.tiktok_client_key or "",
                    "client_secret": settings.tiktok_client_secret or "",
                    "redirect_uri": uri,
                })
                body = _body(resp, platform)
                return TokenSet(
                    access_token=body["access_token"],
                    refresh_token=body.get("refresh_token"),
                    expires_at=_expires(body),
                    external_user_id=body.get("open_id"),
                    scope=body.get("scope"),
                )

            resp = await client.get(provider.token_url, params={
                "client_id": settings.instagram_app_id or "",
                "client_secret": settings.instagram_app_secret or "",
                "redirect_uri": uri,
                "code": code,
            })
            body = _body(resp, platform)
            ig_user_id = await _instagram_account_id(client, body["access_token"])
            return TokenSet(
                access_token=body["access_token"],
                expires_at=_expires(body),
                external_user_id=ig_user_id,
                scope=provider.scope,
            )
    except httpx.HTTPError as exc:
        raise OAuthError(f"{platform.value} token exchange failed: {type(exc).__name__}") from exc


async def _instagram_account_id(client: httpx.AsyncClient, access_token: str) -> str:
    """Instagram business account linked to one of the user's Facebook pages."""
    resp = await client.get(
        f"{GRAPH_URL}/me/accounts",
        params={"fields": "instagram_business_account", "access_token": access_token},
    )
    if resp.status_code != 200:
        raise OAuthError(f"instagram account lookup failed: HTTP {resp.status_code}")
    for page in resp.json().get("data") or []:
        account = page.get("instagram_business_account") or {}
        if account.get("id"):
            return str(account["id"])
    raise OAuthError("No Instagram business account is linked to this Facebook login")
