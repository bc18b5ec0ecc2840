"""
Publish orchestrator: fans one approved video idea out to its selected
platforms and reconciles the per-platform outcomes into one aggregate state.

Flow:
  1. check preconditions (no network, no writes)
  2. reset the target platforms to pending/0 in one write
  3. one job per platform, run concurrently: ensure a valid token, run the adapter
  4. join all jobs, then write the aggregate together with the final maps

No automatic retries. A partially successful idea can be re-published for its
failed platforms only; the aggregate is then recomputed over every selected
platform so earlier successes still count.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelcast.models import (
    Platform,
    PlatformCredential,
    SubscriptionTier,
    UploadState,
    UserProfile,
    VideoIdea,
    WorkflowState,
)
from reelcast.services import approval
from reelcast.services.credential_store import CredentialStore
from reelcast.services.errors import (
    InvalidTransition,
    PersistenceError,
    PreconditionError,
    ReauthRequired,
    RefreshFailed,
)
from reelcast.services.notify import notify_publish_outcome
from reelcast.services.publisher_adapter import (
    PublisherAdapter,
    PublishResult,
    UploadContext,
    UploadMetadata,
    VideoSource,
    get_publisher,
    sanitize,
)
from reelcast.services.tier_gate import blocked_platforms, is_publishable
from reelcast.services.token_refresher import TokenRefresher
from reelcast.services.upload_ledger import UploadLedger

logger = logging.getLogger(__name__)


@dataclass
class AggregateResult:
    video_idea_id: int
    state: WorkflowState
    results: dict[Platform, PublishResult] = field(default_factory=dict)
    upload_status: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[Platform]:
        return [Platform.parse(p) for p, s in self.upload_status.items() if s == UploadState.completed.value]

    @property
    def failed(self) -> list[Platform]:
        return [Platform.parse(p) for p, s in self.upload_status.items() if s != UploadState.completed.value]

    def to_dict(self) -> dict:
        return {
            "video_idea_id": self.video_idea_id,
            "state": self.state.value,
            "results": {p.value: r.to_dict() for p, r in self.results.items()},
            "upload_status": dict(self.upload_status),
        }


def media_url(idea: VideoIdea) -> str:
    """Final render when present, else the approved preview."""
    return idea.video_url or idea.preview_video_url or ""


def aggregate_state(statuses: dict[str, str], selected: Iterable[Platform]) -> WorkflowState:
    """0 completed -> publish_failed, some -> partial_success, all -> published."""
    selected = list(selected)
    done = sum(1 for p in selected if statuses.get(p.value) == UploadState.completed.value)
    if done == 0:
        return WorkflowState.publish_failed
    if done == len(selected):
        return WorkflowState.published
    return WorkflowState.partial_success


def check_preconditions(
    platforms: list[Platform],
    credentials: dict[Platform, PlatformCredential],
    tier: SubscriptionTier,
) -> None:
    """Raise PreconditionError for the first failing check; never touches state."""
    if not platforms:
        raise PreconditionError("no_platforms", "Select at least one platform to publish to")

    unsupported = [p for p in platforms if not is_publishable(p)]
    if unsupported:
        raise PreconditionError(
            "unsupported_platform",
            f"Publishing is not available yet for: {', '.join(p.value for p in unsupported)}",
            unsupported,
        )

    missing = [p for p in platforms if p not in credentials]
    if missing:
        raise PreconditionError(
            "missing_connection",
            f"Connect these accounts before publishing: {', '.join(p.value for p in missing)}",
            missing,
        )

    no_token = [p for p in platforms if not (credentials[p].access_token or "").strip()]
    if no_token:
        raise PreconditionError(
            "missing_access_token",
            f"Stored connection has no access token for: {', '.join(p.value for p in no_token)}",
            no_token,
        )

    blocked = blocked_platforms(tier, platforms)
    if blocked:
        raise PreconditionError(
            "premium_required",
            f"Your {tier.value} plan does not include: {', '.join(p.value for p in blocked)}",
            blocked,
        )


class PublishOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        store: CredentialStore | None = None,
        refresher: TokenRefresher | None = None,
        publishers: dict[Platform, PublisherAdapter] | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        self._session_factory = session_factory
        self._store = store or CredentialStore(session_factory)
        self._refresher = refresher or TokenRefresher(self._store, client_factory=client_factory)
        self._publishers = publishers
        self._client_factory = client_factory

    def _publisher(self, platform: Platform) -> PublisherAdapter:
        if self._publishers is not None and platform in self._publishers:
            return self._publishers[platform]
        adapter = get_publisher(platform)
        if adapter is None:
            raise PreconditionError("unsupported_platform", f"No publisher for {platform.value}", [platform])
        return adapter

    async def _load(self, video_idea_id: int) -> tuple[VideoIdea, UserProfile]:
        async with self._session_factory() as session:
            idea = await approval.load_idea(session, video_idea_id)
            owner = await session.get(UserProfile, idea.user_id)
        if owner is None:
            raise PersistenceError(f"Owner of video idea {video_idea_id} is missing")
        return idea, owner

    async def validate(
        self,
        video_idea_id: int,
        platforms: list[Platform] | None = None,
    ) -> tuple[list[Platform], dict[Platform, PlatformCredential]]:
        """Resolve target platforms and the owner's credentials, then run the precondition checks."""
        idea, owner = await self._load(video_idea_id)
        targets = list(platforms) if platforms is not None else idea.platforms
        credentials = await self._store.bundle_for(owner.id, targets)
        check_preconditions(targets, credentials, owner.tier)
        return targets, credentials

    async def republish_targets(self, video_idea_id: int, platforms: list[Platform] | None = None) -> list[Platform]:
        """Failed platforms of a partially published idea, optionally narrowed by the caller."""
        idea, _owner = await self._load(video_idea_id)
        if idea.workflow_state != WorkflowState.partial_success:
            raise InvalidTransition(idea.state, WorkflowState.publishing.value)
        failed = approval.failed_platforms(idea)
        if platforms is None:
            return failed
        not_failed = [p for p in platforms if p not in failed]
        if not_failed:
            raise PreconditionError(
                "not_failed",
                f"Only failed platforms can be re-published: {', '.join(p.value for p in not_failed)}",
                not_failed,
            )
        return list(dict.fromkeys(platforms))

    async def publish(
        self,
        video_idea_id: int,
        selected_platforms: list[Platform] | None = None,
        credentials_by_platform: dict[Platform, PlatformCredential] | None = None,
    ) -> AggregateResult:
        """Upload an approved idea (state `publishing`) to the given platforms.

        Raises PreconditionError before any network call or write. Per-platform
        failures end up in the result; PersistenceError is raised only after every
        job has settled.
        """
        idea, owner = await self._load(video_idea_id)
        if idea.workflow_state != WorkflowState.publishing:
            raise InvalidTransition(idea.state, WorkflowState.publishing.value)

        platforms = list(selected_platforms) if selected_platforms is not None else idea.platforms
        if credentials_by_platform is None:
            credentials_by_platform = await self._store.bundle_for(owner.id, platforms)
        check_preconditions(platforms, credentials_by_platform, owner.tier)
        adapters = {p: self._publisher(p) for p in platforms}

        ledger = UploadLedger(self._session_factory, video_idea_id)
        await ledger.start(platforms)

        video_source = VideoSource(media_url(idea), client_factory=self._client_factory)
        logger.info(
            f"[publish][idea={video_idea_id}] fan-out to {', '.join(p.value for p in platforms)}"
        )
        outcomes = await asyncio.gather(
            *(
                self._run_job(
                    idea, owner, platform, adapters[platform],
                    credentials_by_platform[platform], ledger, video_source,
                )
                for platform in platforms
            ),
            return_exceptions=True,
        )

        results: dict[Platform, PublishResult] = {}
        persistence_errors: list[BaseException] = []
        for platform, outcome in zip(platforms, outcomes):
            if isinstance(outcome, PublishResult):
                results[platform] = outcome
            elif isinstance(outcome, PersistenceError):
                persistence_errors.append(outcome)
            else:
                raise outcome
        if persistence_errors:
            logger.error(
                f"[publish][idea={video_idea_id}] {len(persistence_errors)} job(s) could not record status"
            )
            raise persistence_errors[0]

        snapshot = ledger.snapshot()
        state = aggregate_state(snapshot["upload_status"], idea.platforms)
        errors = snapshot["upload_errors"]
        detail = "; ".join(
            f"{p.value}: {errors[p.value]}" for p in idea.platforms if p.value in errors
        )
        state = await ledger.finish(state, detail or None)

        aggregate = AggregateResult(
            video_idea_id=video_idea_id,
            state=state,
            results=results,
            upload_status={p.value: snapshot["upload_status"].get(p.value) for p in idea.platforms},
        )
        logger.info(
            f"[publish][idea={video_idea_id}] {state.value}: "
            f"ok={[p.value for p in aggregate.succeeded]} failed={[p.value for p in aggregate.failed]}"
        )
        await notify_publish_outcome(video_idea_id, state, snapshot["upload_errors"])
        return aggregate

    async def _run_job(
        self,
        idea: VideoIdea,
        owner: UserProfile,
        platform: Platform,
        adapter: PublisherAdapter,
        credential: PlatformCredential,
        ledger: UploadLedger,
        video_source: VideoSource,
    ) -> PublishResult:
        tag = f"[publish][idea={idea.id}][{platform.value}]"
        try:
            token = await self._refresher.ensure_valid(credential)
        except (ReauthRequired, RefreshFailed) as exc:
            msg = sanitize(str(exc))
            logger.warning(f"{tag} token unavailable: {msg}")
            await ledger.report(platform, UploadState.failed, error=msg)
            return PublishResult(
                success=False, platform=platform.value, error=msg, retryable=isinstance(exc, RefreshFailed)
            )
        except PersistenceError:
            raise
        except Exception as exc:
            # Lock timeout or a token endpoint surprise; this platform fails, siblings continue
            logger.exception(f"{tag} unexpected token refresh error")
            msg = sanitize(f"Token refresh error: {type(exc).__name__}: {exc}")
            await ledger.report(platform, UploadState.failed, error=msg)
            return PublishResult(success=False, platform=platform.value, error=msg, retryable=True)

        ctx = UploadContext(
            video_idea_id=idea.id,
            access_token=token.access_token,
            video_url=media_url(idea),
            metadata=UploadMetadata.for_platform(idea, platform),
            reporter=ledger,
            video_source=video_source,
            tier=owner.tier,
            external_user_id=credential.external_user_id,
        )
        try:
            return await adapter.publish(ctx)
        except PersistenceError:
            raise
        except Exception as exc:
            # Adapter bug; keep siblings running and record this platform as failed
            logger.exception(f"{tag} unexpected adapter error")
            msg = sanitize(f"Unexpected error: {type(exc).__name__}: {exc}")
            if ledger.status_of(platform) not in (UploadState.completed, UploadState.failed):
                await ledger.report(platform, UploadState.failed, error=msg)
            return PublishResult(success=False, platform=platform.value, error=msg)


async def run_publish(
    session_factory: async_sessionmaker[AsyncSession],
    video_idea_id: int,
    platforms: list[str] | None = None,
    **kwargs,
) -> dict:
    """Entry point for background execution (Celery task / FastAPI background task).

    A precondition that fails by the time the job runs (account disconnected
    since approval) ends the idea as publish_failed instead of leaving it stuck.
    """
    orchestrator = PublishOrchestrator(session_factory, **kwargs)
    selected = [Platform.parse(p) for p in platforms] if platforms is not None else None
    try:
        result = await orchestrator.publish(video_idea_id, selected)
    except PreconditionError as exc:
        logger.warning(f"[publish][idea={video_idea_id}] precondition failed at run time: {exc.reason}")
        async with session_factory() as session:
            idea = await approval.load_idea(session, video_idea_id)
            state = aggregate_state(idea.upload_status or {}, idea.platforms)
            if idea.workflow_state == WorkflowState.publishing:
                approval.transition(idea, state, detail=exc.message)
                await approval.commit(session)
        return {"video_idea_id": video_idea_id, "state": state.value, "error": exc.to_dict()}
    return result.to_dict()
