"""
Video idea endpoints: submission, review, approval and publishing.

GET endpoints are the polling contract for the UI: each idea carries its
workflow state plus the per-platform upload breakdown.
"""
from __future__ import annotations

import logging
from typing import Callable

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import get_session, get_session_factory
from .models import Platform, PlatformCredential, UserProfile, VideoIdea, WorkflowState
from .routes_auth import require_user
from .schemas import RejectRequest, RepublishRequest, VideoIdeaCreate, VideoIdeaRead
from .services import approval
from .services.errors import (
    GenerationRequestFailed,
    InvalidTransition,
    PreconditionError,
    VideoIdeaNotFound,
)
from .services.generation_client import GenerationClient
from .services.publish_orchestrator import PublishOrchestrator, media_url, run_publish
from .services.tier_gate import blocked_platforms, is_publishable
from .settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/video-ideas", tags=["video-ideas"])

SessionDep = Depends(get_session)

PublishDispatcher = Callable[[int, list[Platform]], None]


def get_generation_client() -> GenerationClient:
    return GenerationClient()


def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> PublishOrchestrator:
    return PublishOrchestrator(session_factory)


def get_publish_dispatcher(
    background_tasks: BackgroundTasks,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> PublishDispatcher:
    """Celery when enabled, otherwise a FastAPI background task in this process."""
    if get_settings().celery_enabled:
        def dispatch(video_idea_id: int, platforms: list[Platform]) -> None:
            from .worker.tasks import publish_video_idea

            publish_video_idea.apply_async(args=[video_idea_id, [p.value for p in platforms]], queue="publish")
    else:
        def dispatch(video_idea_id: int, platforms: list[Platform]) -> None:
            background_tasks.add_task(run_publish, session_factory, video_idea_id, [p.value for p in platforms])
    return dispatch


def _precondition_http(exc: PreconditionError) -> HTTPException:
    code = status.HTTP_403_FORBIDDEN if exc.reason == "premium_required" else status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=exc.to_dict())


def _conflict(exc: InvalidTransition) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error": "invalid_transition", "current": exc.current, "target": exc.target},
    )


async def _get_owned(session: AsyncSession, video_idea_id: int, user: UserProfile) -> VideoIdea:
    try:
        return await approval.load_idea(session, video_idea_id, user.id)
    except VideoIdeaNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video idea not found")


def _parse_platforms(names: list[str]) -> list[Platform]:
    platforms, unknown = [], []
    for name in names:
        try:
            platforms.append(Platform.parse(name))
        except ValueError:
            unknown.append(name)
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "unknown_platform", "platforms": sorted(unknown)},
        )
    return platforms


@router.post("", response_model=VideoIdeaRead, status_code=status.HTTP_201_CREATED)
async def submit_video_idea(
    payload: VideoIdeaCreate,
    user: UserProfile = Depends(require_user),
    session: AsyncSession = SessionDep,
    generation: GenerationClient = Depends(get_generation_client),
):
    """Create an idea and hand it to the generation pipeline; one credit per accepted request."""
    platforms = _parse_platforms(payload.selected_platforms)

    unsupported = [p for p in platforms if not is_publishable(p)]
    if unsupported:
        raise _precondition_http(PreconditionError(
            "unsupported_platform",
            f"Publishing is not available yet for: {', '.join(p.value for p in unsupported)}",
            unsupported,
        ))
    blocked = blocked_platforms(user.tier, platforms)
    if blocked:
        raise _precondition_http(PreconditionError(
            "premium_required",
            f"Your {user.tier.value} plan does not include: {', '.join(p.value for p in blocked)}",
            blocked,
        ))
    if user.credits < 1:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"error": "no_credits", "message": "No video credits left"},
        )

    idea = VideoIdea(
        user_id=user.id,
        idea_text=payload.idea_text,
        caption=payload.caption,
        environment_prompt=payload.environment_prompt,
        sound_prompt=payload.sound_prompt,
        use_ai_voice=payload.use_ai_voice,
        voice_file_url=payload.voice_file_url,
        selected_platforms=[p.value for p in platforms],
        state=WorkflowState.submitted.value,
    )
    session.add(idea)
    await approval.commit(session)
    await session.refresh(idea)

    connected_q = await session.execute(
        select(PlatformCredential.platform).where(PlatformCredential.user_id == user.id)
    )
    connected_names = set(connected_q.scalars().all())
    connected = [p for p in platforms if p.value in connected_names]

    try:
        response = await generation.request_generation(idea, phase="preview", connected_platforms=connected)
    except GenerationRequestFailed as exc:
        logger.warning(f"[submit][idea={idea.id}] generation request failed: {exc}")
        approval.mark_generation_failed(idea, str(exc))
        await approval.commit(session)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "generation_unavailable", "message": str(exc), "video_idea_id": idea.id},
        )

    if response.video_file:
        approval.mark_ready_for_approval(idea, response.video_file)
    elif response.preview_video_url:
        approval.mark_preview_ready(idea, response.preview_video_url)
    else:
        approval.mark_generating(idea)

    charged = await session.execute(
        update(UserProfile)
        .where(UserProfile.id == user.id, UserProfile.credits >= 1)
        .values(credits=UserProfile.credits - 1)
    )
    if charged.rowcount == 0:
        logger.warning(f"[submit][idea={idea.id}] credit already spent by a concurrent submission")
    await approval.commit(session)
    await session.refresh(idea)
    logger.info(f"[submit][idea={idea.id}] accepted for user {user.id} -> {idea.state}")
    return VideoIdeaRead.from_model(idea)


@router.get("", response_model=list[VideoIdeaRead])
async def list_video_ideas(
    state: WorkflowState | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    user: UserProfile = Depends(require_user),
    session: AsyncSession = SessionDep,
):
    q = select(VideoIdea).where(VideoIdea.user_id == user.id)
    if state is not None:
        q = q.where(VideoIdea.state == state.value)
    q = q.order_by(VideoIdea.created_at.desc(), VideoIdea.id.desc()).limit(limit)
    result = await session.execute(q)
    return [VideoIdeaRead.from_model(idea) for idea in result.scalars().all()]


@router.get("/{video_idea_id}", response_model=VideoIdeaRead)
async def get_video_idea(
    video_idea_id: int,
    user: UserProfile = Depends(require_user),
    session: AsyncSession = SessionDep,
):
    return VideoIdeaRead.from_model(await _get_owned(session, video_idea_id, user))


@router.post("/{video_idea_id}/approve", response_model=VideoIdeaRead, status_code=status.HTTP_202_ACCEPTED)
async def approve_video_idea(
    video_idea_id: int,
    user: UserProfile = Depends(require_user),
    session: AsyncSession = SessionDep,
    orchestrator: PublishOrchestrator = Depends(get_orchestrator),
    dispatch: PublishDispatcher = Depends(get_publish_dispatcher),
):
    """Approve and start publishing. All checks run before anything changes."""
    idea = await _get_owned(session, video_idea_id, user)
    if idea.workflow_state not in approval.APPROVABLE:
        raise _conflict(InvalidTransition(idea.state, WorkflowState.publishing.value))
    if not media_url(idea):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "no_video", "message": "Video is not rendered yet"},
        )
    try:
        platforms, _credentials = await orchestrator.validate(video_idea_id)
    except PreconditionError as exc:
        raise _precondition_http(exc)

    try:
        approval.approve(idea)
    except InvalidTransition as exc:
        raise _conflict(exc)
    await approval.commit(session)
    dispatch(video_idea_id, platforms)
    await session.refresh(idea)
    return VideoIdeaRead.from_model(idea)


@router.post("/{video_idea_id}/reject", response_model=VideoIdeaRead)
async def reject_video_idea(
    video_idea_id: int,
    payload: RejectRequest | None = None,
    user: UserProfile = Depends(require_user),
    session: AsyncSession = SessionDep,
):
    idea = await _get_owned(session, video_idea_id, user)
    try:
        approval.reject(idea, payload.reason if payload else None)
    except InvalidTransition as exc:
        raise _conflict(exc)
    await approval.commit(session)
    await session.refresh(idea)
    return VideoIdeaRead.from_model(idea)


@router.post("/{video_idea_id}/republish", response_model=VideoIdeaRead, status_code=status.HTTP_202_ACCEPTED)
async def republish_video_idea(
    video_idea_id: int,
    payload: RepublishRequest | None = None,
    user: UserProfile = Depends(require_user),
    session: AsyncSession = SessionDep,
    orchestrator: PublishOrchestrator = Depends(get_orchestrator),
    dispatch: PublishDispatcher = Depends(get_publish_dispatcher),
):
    """Retry the failed platforms of a partially published idea."""
    idea = await _get_owned(session, video_idea_id, user)
    requested = _parse_platforms(payload.platforms) if payload and payload.platforms else None
    try:
        targets = await orchestrator.republish_targets(video_idea_id, requested)
        await orchestrator.validate(video_idea_id, targets)
        approval.begin_republish(idea)
    except InvalidTransition as exc:
        raise _conflict(exc)
    except PreconditionError as exc:
        raise _precondition_http(exc)
    await approval.commit(session)
    dispatch(video_idea_id, targets)
    await session.refresh(idea)
    return VideoIdeaRead.from_model(idea)
