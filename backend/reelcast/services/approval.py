"""
Approval state machine for video ideas.

A video idea carries exactly one WorkflowState; the (status, approval_status)
pair shown to clients is derived from it. Every change goes through
transition(), which rejects moves not listed in TRANSITIONS.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reelcast.models import Platform, UploadState, VideoIdea, WorkflowState
from reelcast.services.errors import InvalidTransition, PersistenceError, VideoIdeaNotFound

logger = logging.getLogger(__name__)

S = WorkflowState

TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    S.submitted: frozenset({S.generating, S.preview_ready, S.ready_for_approval, S.generation_failed}),
    S.generating: frozenset({S.preview_ready, S.ready_for_approval, S.generation_failed}),
    S.preview_ready: frozenset({S.ready_for_approval, S.publishing, S.rejected}),
    S.ready_for_approval: frozenset({S.publishing, S.rejected}),
    S.publishing: frozenset({S.published, S.partial_success, S.publish_failed}),
    S.partial_success: frozenset({S.publishing}),
    S.published: frozenset(),
    S.publish_failed: frozenset(),
    S.generation_failed: frozenset(),
    S.rejected: frozenset(),
}

APPROVABLE = frozenset({S.preview_ready, S.ready_for_approval})


def can_transition(current: WorkflowState, target: WorkflowState) -> bool:
    return target in TRANSITIONS[current]


def transition(idea: VideoIdea, target: WorkflowState, detail: str | None = None) -> None:
    """Move the idea in memory; the caller commits."""
    current = idea.workflow_state
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)
    now = datetime.now(timezone.utc)
    idea.state = target.value
    idea.state_detail = detail
    if target == S.publishing and current in APPROVABLE:
        idea.approved_at = now
    elif target == S.rejected:
        idea.rejected_at = now
    elif target in (S.published, S.partial_success):
        idea.published_at = now
    logger.info(f"[approval][idea={idea.id}] {current.value} -> {target.value}")


async def load_idea(session: AsyncSession, video_idea_id: int, user_id: int | None = None) -> VideoIdea:
    """Fetch an idea, optionally scoped to its owner (other users' ideas look missing)."""
    try:
        idea = await session.get(VideoIdea, video_idea_id)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"video idea load failed: {exc}") from exc
    if idea is None or (user_id is not None and idea.user_id != user_id):
        raise VideoIdeaNotFound(f"Video idea {video_idea_id} not found")
    return idea


async def commit(session: AsyncSession) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError(f"video idea write failed: {exc}") from exc


def approve(idea: VideoIdea) -> None:
    transition(idea, S.publishing)


def reject(idea: VideoIdea, reason: str | None = None) -> None:
    transition(idea, S.rejected, detail=(reason or None))


def begin_republish(idea: VideoIdea) -> None:
    transition(idea, S.publishing)


def mark_generating(idea: VideoIdea) -> None:
    transition(idea, S.generating)


def mark_preview_ready(idea: VideoIdea, preview_video_url: str) -> None:
    transition(idea, S.preview_ready)
    idea.preview_video_url = preview_video_url


def mark_generation_failed(idea: VideoIdea, reason: str | None = None) -> None:
    transition(idea, S.generation_failed, detail=reason)


_VIDEO_READY_FIELDS = (
    "caption", "youtube_title", "tiktok_title", "instagram_title",
    "environment_prompt", "sound_prompt",
)


def mark_ready_for_approval(idea: VideoIdea, video_url: str, **metadata: str | None) -> None:
    """Attach the rendered video and its generated metadata."""
    transition(idea, S.ready_for_approval)
    idea.video_url = video_url
    for name in _VIDEO_READY_FIELDS:
        value = metadata.get(name)
        if value is not None:
            setattr(idea, name, value)


def failed_platforms(idea: VideoIdea) -> list[Platform]:
    """Selected platforms whose last upload did not complete."""
    status = idea.upload_status or {}
    return [p for p in idea.platforms if status.get(p.value) != UploadState.completed.value]


def apply_pipeline_publish_result(
    idea: VideoIdea,
    outcome: str,
    platform_links: dict[str, str] | None = None,
    error_message: str | None = None,
) -> None:
    """Publish outcome reported by the pipeline itself (approval-response callback).

    outcome: upload_complete | upload_failed | rejected
    """
    if outcome == "rejected":
        reject(idea, error_message)
        return

    if idea.workflow_state in APPROVABLE:
        approve(idea)

    if outcome == "upload_failed":
        transition(idea, S.publish_failed, detail=error_message)
        return

    links = {}
    for name, url in (platform_links or {}).items():
        platform = Platform.parse(name)
        if platform in idea.platforms and url:
            links[platform.value] = url
    # No links at all means the pipeline reported a blanket success
    completed = set(links) if platform_links else {p.value for p in idea.platforms}

    status = dict(idea.upload_status or {})
    progress = dict(idea.upload_progress or {})
    for platform in idea.platforms:
        done = platform.value in completed
        status[platform.value] = UploadState.completed.value if done else UploadState.failed.value
        if done:
            progress[platform.value] = 100
    idea.upload_status = status
    idea.upload_progress = progress
    idea.upload_links = {**(idea.upload_links or {}), **links}

    if not completed:
        transition(idea, S.publish_failed, detail=error_message)
    elif len(completed) == len(idea.platforms):
        transition(idea, S.published)
    else:
        transition(idea, S.partial_success, detail=error_message)
