"""
Token refresher: hands out access tokens that are valid for at least the
next five minutes, refreshing through the provider when needed.

Only YouTube (Google OAuth) issues refresh tokens here. TikTok and Instagram
grants are used as-is until they expire and then require a new connect.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx

from reelcast.models import Platform, PlatformCredential
from reelcast.services.credential_store import CredentialStore, TokenSet
from reelcast.services.errors import CredentialNotFound, ReauthRequired, RefreshFailed
from reelcast.services.refresh_lock import refresh_lock
from reelcast.services.tier_gate import is_refreshable
from reelcast.settings import get_settings

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_EXPIRES_IN = 3600


@dataclass
class ValidToken:
    access_token: str
    expires_at: datetime | None
    refreshed: bool = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _error_code(resp: httpx.Response) -> str | None:
    """OAuth `error` field of a token endpoint response, if any."""
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return None


def _expires_in(value) -> int:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return DEFAULT_EXPIRES_IN
    return seconds if seconds > 0 else DEFAULT_EXPIRES_IN


class TokenRefresher:
    def __init__(
        self,
        store: CredentialStore,
        *,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        lock_factory=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=get_settings().http_timeout_sec)
        )
        self._lock_factory = lock_factory or refresh_lock
        self._clock = clock

    def needs_refresh(self, credential: PlatformCredential, force_refresh: bool = False) -> bool:
        if force_refresh:
            return True
        expires_at = as_utc(credential.expires_at)
        if expires_at is None:
            return False
        return expires_at <= self._clock() + REFRESH_MARGIN

    def _is_expired(self, credential: PlatformCredential) -> bool:
        expires_at = as_utc(credential.expires_at)
        return expires_at is not None and expires_at <= self._clock()

    async def ensure_valid(self, credential: PlatformCredential, force_refresh: bool = False) -> ValidToken:
        platform = Platform.parse(credential.platform)

        if not self.needs_refresh(credential, force_refresh):
            return ValidToken(credential.access_token, as_utc(credential.expires_at), refreshed=False)

        if not is_refreshable(platform):
            if force_refresh or self._is_expired(credential):
                raise ReauthRequired(
                    platform.value,
                    f"{platform.value} access token expired and cannot be refreshed; reconnect the account",
                )
            return ValidToken(credential.access_token, as_utc(credential.expires_at), refreshed=False)

        async with self._lock_factory(credential.user_id, platform.value):
            # Another caller may have refreshed (or deleted) the grant while we waited
            try:
                current = await self._store.get(credential.user_id, platform)
            except CredentialNotFound:
                raise ReauthRequired(platform.value, f"{platform.value} connection was removed; reconnect the account")

            if current.access_token != credential.access_token and not self.needs_refresh(current):
                logger.info(f"[token] Reusing {platform.value} token refreshed concurrently for user {credential.user_id}")
                return ValidToken(current.access_token, as_utc(current.expires_at), refreshed=False)
            if not self.needs_refresh(current, force_refresh):
                return ValidToken(current.access_token, as_utc(current.expires_at), refreshed=False)

            return await self._refresh_google(current)

    async def _refresh_google(self, credential: PlatformCredential) -> ValidToken:
        platform = Platform.parse(credential.platform)
        user_id = credential.user_id

        if not credential.refresh_token:
            logger.warning(f"[token] {platform.value} credential for user {user_id} has no refresh token; deleting")
            await self._store.delete(user_id, platform)
            raise ReauthRequired(platform.value, "No refresh token stored; reconnect the account")

        settings = get_settings()
        data = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": settings.youtube_client_id or "",
            "client_secret": settings.youtube_client_secret or "",
        }
        try:
            async with self._client_factory() as client:
                resp = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            logger.warning(f"[token] {platform.value} refresh network error for user {user_id}: {type(exc).__name__}")
            raise RefreshFailed(platform.value, f"Token endpoint unreachable: {type(exc).__name__}") from exc

        if resp.status_code == 400 and _error_code(resp) in ("invalid_grant", None):
            logger.warning(f"[token] {platform.value} refresh token rejected for user {user_id}; deleting grant")
            await self._store.delete(user_id, platform)
            raise ReauthRequired(platform.value, "Refresh token was rejected; reconnect the account")

        if resp.status_code >= 300:
            # 401 invalid_client and friends are our misconfiguration, the user's grant stays
            logger.warning(
                f"[token] {platform.value} refresh failed for user {user_id}: "
                f"HTTP {resp.status_code} {_error_code(resp) or ''}".rstrip()
            )
            raise RefreshFailed(platform.value, f"Token endpoint returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise RefreshFailed(platform.value, "Token endpoint returned a non-JSON body") from exc
        if not isinstance(body, dict) or not body.get("access_token"):
            raise RefreshFailed(platform.value, "Token endpoint response has no access_token")
        access_token = body["access_token"]

        expires_in = _expires_in(body.get("expires_in"))
        expires_at = self._clock() + timedelta(seconds=expires_in)
        await self._store.upsert(
            user_id,
            platform,
            TokenSet(
                access_token=access_token,
                refresh_token=body.get("refresh_token") or credential.refresh_token,
                expires_at=expires_at,
                scope=body.get("scope"),
            ),
        )
        logger.info(f"[token] Refreshed {platform.value} token for user {user_id} (expires in {expires_in}s)")
        return ValidToken(access_token, expires_at, refreshed=True)
