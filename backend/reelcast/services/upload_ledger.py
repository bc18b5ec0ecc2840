"""
UploadLedger: the only writer of a video idea's per-platform upload maps
during a publish run.

Platform jobs report through it concurrently; it keeps the maps in memory
under one asyncio.Lock and persists the complete maps on every change, so
there is no read-modify-write race between jobs.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelcast.models import Platform, UploadState, VideoIdea, WorkflowState
from reelcast.services import approval
from reelcast.services.errors import PersistenceError, VideoIdeaNotFound

logger = logging.getLogger(__name__)

_STATE_RANK = {
    UploadState.pending: 0,
    UploadState.uploading: 1,
    UploadState.completed: 2,
    UploadState.failed: 2,
}

_MAPS = ("upload_status", "upload_progress", "upload_errors", "upload_links", "upload_external_ids")


def is_forward(current: UploadState | None, target: UploadState) -> bool:
    """pending -> uploading -> completed|failed; terminal states never change."""
    if current is None:
        return True
    if current in (UploadState.completed, UploadState.failed):
        return False
    return _STATE_RANK[target] > _STATE_RANK[current]


class UploadLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], video_idea_id: int):
        self._session_factory = session_factory
        self.video_idea_id = video_idea_id
        self._lock = asyncio.Lock()
        self._maps: dict[str, dict] = {name: {} for name in _MAPS}

    async def start(self, platforms: Iterable[Platform]) -> None:
        """Load current maps and reset the given platforms to pending/0."""
        platforms = list(platforms)
        async with self._lock:
            async with self._session_factory() as session:
                idea = await self._load(session)
                for name in _MAPS:
                    self._maps[name] = dict(getattr(idea, name) or {})
                for platform in platforms:
                    key = platform.value
                    self._maps["upload_status"][key] = UploadState.pending.value
                    self._maps["upload_progress"][key] = 0
                    self._maps["upload_errors"].pop(key, None)
                    self._maps["upload_links"].pop(key, None)
                    self._maps["upload_external_ids"].pop(key, None)
                self._apply(idea)
                await self._commit(session)
        logger.info(
            f"[ledger][idea={self.video_idea_id}] pending: {', '.join(p.value for p in platforms)}"
        )

    async def report(
        self,
        platform: Platform,
        state: UploadState,
        *,
        progress: int | None = None,
        error: str | None = None,
        url: str | None = None,
        external_id: str | None = None,
    ) -> bool:
        """Record a status change. Returns False (and writes nothing) for backward moves."""
        key = platform.value
        async with self._lock:
            current_raw = self._maps["upload_status"].get(key)
            current = UploadState(current_raw) if current_raw else None
            if current == state and state == UploadState.uploading:
                # progress update within the uploading phase
                pass
            elif not is_forward(current, state):
                logger.warning(
                    f"[ledger][idea={self.video_idea_id}][{key}] ignoring {current_raw} -> {state.value}"
                )
                return False

            self._maps["upload_status"][key] = state.value
            if state == UploadState.completed:
                progress = 100
            if progress is not None:
                self._maps["upload_progress"][key] = max(0, min(100, int(progress)))
            if error is not None:
                self._maps["upload_errors"][key] = error
            if url is not None:
                self._maps["upload_links"][key] = url
            if external_id is not None:
                self._maps["upload_external_ids"][key] = external_id

            async with self._session_factory() as session:
                idea = await self._load(session)
                self._apply(idea)
                await self._commit(session)
        return True

    async def finish(self, state: WorkflowState, detail: str | None = None) -> WorkflowState:
        """Write the aggregate state together with the final maps in one transaction.

        Returns the state the idea ends in. When the idea already left
        `publishing` (closed by the watchdog) nothing is written.
        """
        async with self._lock:
            async with self._session_factory() as session:
                idea = await self._load(session)
                current = idea.workflow_state
                if not approval.can_transition(current, state):
                    logger.warning(
                        f"[ledger][idea={self.video_idea_id}] idea is already {current.value}, "
                        f"not overwriting with {state.value}"
                    )
                    return current
                self._apply(idea)
                idea.state = state.value
                idea.state_detail = detail
                if state in (WorkflowState.published, WorkflowState.partial_success):
                    idea.published_at = datetime.now(timezone.utc)
                await self._commit(session)
        logger.info(f"[ledger][idea={self.video_idea_id}] final state: {state.value}")
        return state

    def status_of(self, platform: Platform) -> UploadState | None:
        raw = self._maps["upload_status"].get(platform.value)
        return UploadState(raw) if raw else None

    def snapshot(self) -> dict[str, dict]:
        return {name: dict(values) for name, values in self._maps.items()}

    async def _load(self, session: AsyncSession) -> VideoIdea:
        try:
            idea = await session.get(VideoIdea, self.video_idea_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"video idea load failed: {exc}") from exc
        if idea is None:
            raise VideoIdeaNotFound(f"Video idea {self.video_idea_id} not found")
        return idea

    def _apply(self, idea: VideoIdea) -> None:
        # fresh dict objects so the JSON columns are flagged dirty
        for name in _MAPS:
            setattr(idea, name, dict(self._maps[name]))

    async def _commit(self, session: AsyncSession) -> None:
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError(f"upload status write failed: {exc}") from exc
