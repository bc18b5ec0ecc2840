"""
Bearer-token authentication.

Each user holds one API token; only its sha256 is stored. Tokens are issued by
an operator with ADMIN_PASSWORD (account signup and billing live elsewhere).
"""

import hashlib
import hmac
import secrets

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import UserProfile
from .schemas import ProfileRead, TokenIssueRequest, TokenIssueResponse
from .settings import get_settings

router = APIRouter(prefix="/api/auth", tags=["auth"])
security = HTTPBearer(auto_error=False)

SessionDep = Depends(get_session)


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _generate_token() -> str:
    return secrets.token_urlsafe(32)


async def require_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    session: AsyncSession = SessionDep,
) -> UserProfile:
    """Dependency that resolves the bearer token to its user or raises 401."""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = await session.scalar(
        select(UserProfile).where(UserProfile.api_token_hash == _hash_token(credentials.credentials))
    )
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


@router.post("/tokens", response_model=TokenIssueResponse, status_code=status.HTTP_201_CREATED)
async def issue_token(payload: TokenIssueRequest, session: AsyncSession = SessionDep):
    """Create the user if needed and (re)issue its API token. Old tokens stop working."""
    admin_password = get_settings().admin_password
    if not admin_password or not hmac.compare_digest(
        _hash_token(payload.admin_password), _hash_token(admin_password)
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin password")

    email = payload.email.strip().lower()
    user = await session.scalar(select(UserProfile).where(UserProfile.email == email))
    if user is None:
        user = UserProfile(email=email, subscription_tier=payload.subscription_tier.value, credits=payload.credits or 0)
        session.add(user)
    else:
        user.subscription_tier = payload.subscription_tier.value
        if payload.credits is not None:
            user.credits = payload.credits

    token = _generate_token()
    user.api_token_hash = _hash_token(token)
    await session.commit()
    await session.refresh(user)
    return TokenIssueResponse(user_id=user.id, token=token)


@router.get("/me", response_model=ProfileRead)
async def get_current_user(user: UserProfile = Depends(require_user)):
    return user
