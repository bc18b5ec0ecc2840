"""
Watchdog service: finds video ideas stuck mid-workflow and closes them out.

Stuck criteria:
- state == "publishing" and updated_at < now - STUCK_PUBLISHING_MINUTES
  → unfinished platforms marked failed, aggregate recomputed
- state in ("submitted", "generating") and updated_at < now - STUCK_GENERATING_MINUTES
  → generation_failed
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from reelcast.models import UploadState, VideoIdea, WorkflowState
from reelcast.services import approval
from reelcast.services.notify import notify_stuck_ideas
from reelcast.services.publish_orchestrator import aggregate_state
from reelcast.services.token_refresher import as_utc
from reelcast.settings import get_settings

logger = logging.getLogger(__name__)

_GENERATION_STATES = (WorkflowState.submitted.value, WorkflowState.generating.value)


def _close_stuck_publish(idea: VideoIdea, error_msg: str) -> WorkflowState:
    status = dict(idea.upload_status or {})
    errors = dict(idea.upload_errors or {})
    for platform in idea.platforms:
        if status.get(platform.value) not in (UploadState.completed.value, UploadState.failed.value):
            status[platform.value] = UploadState.failed.value
            errors[platform.value] = error_msg
    idea.upload_status = status
    idea.upload_errors = errors
    target = aggregate_state(status, idea.platforms)
    approval.transition(idea, target, detail=error_msg)
    return target


async def run_watchdog(session: AsyncSession, *, dry_run: bool = False) -> dict[str, Any]:
    """Find stuck video ideas and finish them. Returns a report dict."""
    settings = get_settings()
    now = datetime.now(timezone.utc)

    publishing_cutoff = now - timedelta(minutes=settings.stuck_publishing_minutes)
    generating_cutoff = now - timedelta(minutes=settings.stuck_generating_minutes)

    stuck_publishing = list((await session.execute(
        select(VideoIdea).where(and_(
            VideoIdea.state == WorkflowState.publishing.value,
            VideoIdea.updated_at < publishing_cutoff,
        ))
    )).scalars().all())
    stuck_generating = list((await session.execute(
        select(VideoIdea).where(and_(
            VideoIdea.state.in_(_GENERATION_STATES),
            VideoIdea.updated_at < generating_cutoff,
        ))
    )).scalars().all())

    report_items: list[dict] = []

    for idea in stuck_publishing:
        age_minutes = (now - as_utc(idea.updated_at)).total_seconds() / 60
        error_msg = f"watchdog: stuck publishing > {settings.stuck_publishing_minutes}m (age={age_minutes:.0f}m)"
        item = {
            "video_idea_id": idea.id,
            "old_state": idea.state,
            "age_minutes": round(age_minutes),
            "error_message": error_msg,
        }
        if not dry_run:
            item["new_state"] = _close_stuck_publish(idea, error_msg).value
            item["action"] = "closed"
        else:
            item["action"] = "would_close"
        report_items.append(item)

    for idea in stuck_generating:
        age_minutes = (now - as_utc(idea.updated_at)).total_seconds() / 60
        error_msg = f"watchdog: no video after {settings.stuck_generating_minutes}m (age={age_minutes:.0f}m)"
        item = {
            "video_idea_id": idea.id,
            "old_state": idea.state,
            "age_minutes": round(age_minutes),
            "error_message": error_msg,
        }
        if not dry_run:
            approval.mark_generation_failed(idea, error_msg)
            item["new_state"] = WorkflowState.generation_failed.value
            item["action"] = "closed"
        else:
            item["action"] = "would_close"
        report_items.append(item)

    if not dry_run and report_items:
        await approval.commit(session)
        await notify_stuck_ideas(report_items)

    logger.info(f"[watchdog] Found {len(report_items)} stuck video ideas (dry_run={dry_run})")

    return {
        "stuck_count": len(report_items),
        "stuck_publishing": len(stuck_publishing),
        "stuck_generating": len(stuck_generating),
        "items": report_items,
        "dry_run": dry_run,
        "run_at": now.isoformat(),
        "settings": {
            "stuck_publishing_minutes": settings.stuck_publishing_minutes,
            "stuck_generating_minutes": settings.stuck_generating_minutes,
        },
    }


async def get_health(session: AsyncSession) -> dict[str, Any]:
    """Return system health overview."""
    settings = get_settings()

    await session.execute(text("SELECT 1"))

    counts_q = await session.execute(
        select(VideoIdea.state, func.count(VideoIdea.id)).group_by(VideoIdea.state)
    )
    counts = {row[0]: row[1] for row in counts_q.all()}

    return {
        "db": "ok",
        "counts": counts,
        "scheduler_enabled": settings.scheduler_enabled,
        "celery_enabled": settings.celery_enabled,
        "refresh_lock_backend": settings.refresh_lock_backend,
    }
