"""
Connected platform accounts: listing, disconnect, manual refresh and the
OAuth connect flow (authorize redirect + provider callback).
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import get_session_factory
from .models import Platform, UserProfile
from .routes_auth import require_user
from .schemas import CredentialRead, RefreshRequest
from .services.credential_store import CredentialStore
from .services.errors import CredentialNotFound, ReauthRequired, RefreshFailed
from .services.oauth import InvalidOAuthState, OAuthError, authorize_url, exchange_code, verify_state
from .services.token_refresher import TokenRefresher, as_utc
from .settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credentials", tags=["credentials"])
oauth_router = APIRouter(prefix="/api/oauth", tags=["oauth"])


def get_credential_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> CredentialStore:
    return CredentialStore(session_factory)


def get_token_refresher(store: CredentialStore = Depends(get_credential_store)) -> TokenRefresher:
    return TokenRefresher(store)


def _platform(name: str) -> Platform:
    try:
        return Platform.parse(name)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "unknown_platform", "platform": name},
        )


@router.get("", response_model=list[CredentialRead])
async def list_credentials(
    user: UserProfile = Depends(require_user),
    store: CredentialStore = Depends(get_credential_store),
):
    """Connection overview; secrets are never returned."""
    return [
        CredentialRead(
            platform=Platform.parse(c.platform),
            expires_at=as_utc(c.expires_at),
            has_refresh_token=bool(c.refresh_token),
            external_user_id=c.external_user_id,
            scope=c.scope,
        )
        for c in await store.list_by_user(user.id)
    ]


@router.delete("/{platform}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    platform: str,
    user: UserProfile = Depends(require_user),
    store: CredentialStore = Depends(get_credential_store),
):
    await store.delete(user.id, _platform(platform))


@router.post("/{platform}/refresh")
async def refresh_credential(
    platform: str,
    payload: RefreshRequest | None = None,
    user: UserProfile = Depends(require_user),
    store: CredentialStore = Depends(get_credential_store),
    refresher: TokenRefresher = Depends(get_token_refresher),
):
    target = _platform(platform)
    try:
        credential = await store.get(user.id, target)
    except CredentialNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "missing_connection", "platform": target.value},
        )
    try:
        token = await refresher.ensure_valid(credential, force_refresh=bool(payload and payload.force))
    except ReauthRequired as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "requires_reauth", "platform": target.value, "message": str(exc)},
        )
    except RefreshFailed as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "refresh_failed", "platform": target.value, "message": str(exc)},
        )
    return {
        "platform": target.value,
        "refreshed": token.refreshed,
        "expires_at": token.expires_at.isoformat() if token.expires_at else None,
    }


@oauth_router.get("/{platform}/authorize")
async def oauth_authorize(
    platform: str,
    redirect: bool = Query(default=False),
    user: UserProfile = Depends(require_user),
):
    """Provider consent URL; `?redirect=true` answers with a 307 instead of JSON."""
    target = _platform(platform)
    try:
        url = authorize_url(target, user.id)
    except OAuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "oauth_unavailable", "platform": target.value, "message": str(exc)},
        )
    if redirect:
        return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    return {"platform": target.value, "authorize_url": url}


@oauth_router.get("/{platform}/callback")
async def oauth_callback(
    platform: str,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    store: CredentialStore = Depends(get_credential_store),
):
    """Provider redirect target. The signed state identifies the user."""
    target = _platform(platform)
    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "oauth_denied", "platform": target.value, "message": error},
        )
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_callback", "message": "code and state are required"},
        )
    try:
        user_id = verify_state(state)
    except InvalidOAuthState as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_state", "message": str(exc)},
        )
    try:
        token_set = await exchange_code(target, code)
    except OAuthError as exc:
        logger.warning(f"[oauth][{target.value}] exchange failed for user {user_id}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "exchange_failed", "platform": target.value, "message": str(exc)},
        )
    await store.upsert(user_id, target, token_set)
    logger.info(f"[oauth][{target.value}] connected for user {user_id}")

    settings = get_settings()
    return {
        "success": True,
        "platform": target.value,
        "user_id": user_id,
        "return_to": f"{settings.public_base_url.rstrip('/')}/connect-accounts?connected={target.value}",
    }
