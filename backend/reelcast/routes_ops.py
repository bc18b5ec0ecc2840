"""
Operations endpoints: health and manual watchdog runs.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import UserProfile
from .routes_auth import require_user
from .services.watchdog_service import get_health, run_watchdog

router = APIRouter(prefix="/api/ops", tags=["ops"])

SessionDep = Depends(get_session)


@router.get("/health")
async def health_endpoint(session: AsyncSession = SessionDep):
    """DB check plus video idea counts by state."""
    return await get_health(session)


@router.post("/watchdog")
async def run_watchdog_endpoint(
    dry_run: bool = Query(default=True),
    session: AsyncSession = SessionDep,
    _user: UserProfile = Depends(require_user),
):
    return await run_watchdog(session, dry_run=dry_run)
