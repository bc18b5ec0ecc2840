import asyncio
import contextlib
from datetime import timedelta

import httpx
import pytest

from conftest import mock_client_factory
from reelcast.models import Platform, SubscriptionTier, WorkflowState
from reelcast.services.credential_store import CredentialStore
from reelcast.services import approval
from reelcast.services.errors import AdapterUploadError, InvalidTransition, PersistenceError, PreconditionError
from reelcast.services.publish_orchestrator import (
    PublishOrchestrator,
    aggregate_state,
    check_preconditions,
    run_publish,
)
from reelcast.services.publisher_adapter import PublisherAdapter
from reelcast.services.token_refresher import TokenRefresher


class FakePublisher(PublisherAdapter):
    def __init__(self, platform, *, fail=None, raises=None, delay=0.0):
        super().__init__()
        self.platform = platform
        self.fail = fail
        self.raises = raises
        self.delay = delay
        self.calls = []

    async def _upload(self, ctx):
        self.calls.append(ctx)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        if self.fail:
            raise AdapterUploadError(self.fail)
        return f"{self.platform.value}-id", f"https://{self.platform.value}.example.com/v/1"


def publishers(**overrides):
    adapters = {p: FakePublisher(p) for p in (Platform.youtube, Platform.tiktok, Platform.instagram)}
    for name, adapter in overrides.items():
        adapters[Platform(name)] = adapter
    return adapters


def orchestrator_for(session_factory, adapters, handler=None):
    store = CredentialStore(session_factory)
    refresher = TokenRefresher(store, client_factory=mock_client_factory(handler) if handler else None)
    return PublishOrchestrator(session_factory, store=store, refresher=refresher, publishers=adapters)


# ── pure helpers ─────────────────────────────────────────────

def test_aggregate_state():
    selected = [Platform.youtube, Platform.tiktok]
    assert aggregate_state({"youtube": "completed", "tiktok": "completed"}, selected) == WorkflowState.published
    assert aggregate_state({"youtube": "completed", "tiktok": "failed"}, selected) == WorkflowState.partial_success
    assert aggregate_state({"youtube": "failed", "tiktok": "failed"}, selected) == WorkflowState.publish_failed
    assert aggregate_state({}, selected) == WorkflowState.publish_failed


class _Cred:
    def __init__(self, token="tok"):
        self.access_token = token


@pytest.mark.parametrize(
    "platforms, credentials, tier, reason, named",
    [
        ([], {}, SubscriptionTier.pro, "no_platforms", []),
        ([Platform.youtube, Platform.facebook], {}, SubscriptionTier.pro, "unsupported_platform", ["facebook"]),
        ([Platform.youtube, Platform.tiktok], {Platform.youtube: _Cred()}, SubscriptionTier.free, "missing_connection", ["tiktok"]),
        ([Platform.youtube], {Platform.youtube: _Cred("  ")}, SubscriptionTier.free, "missing_access_token", ["youtube"]),
        (
            [Platform.youtube, Platform.tiktok],
            {Platform.youtube: _Cred(), Platform.tiktok: _Cred()},
            SubscriptionTier.free,
            "premium_required",
            ["tiktok"],
        ),
    ],
)
def test_precondition_order(platforms, credentials, tier, reason, named):
    with pytest.raises(PreconditionError) as exc_info:
        check_preconditions(platforms, credentials, tier)
    assert exc_info.value.reason == reason
    assert exc_info.value.platforms == named


# ── publish ──────────────────────────────────────────────────

async def test_all_platforms_succeed(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    for platform in (Platform.youtube, Platform.tiktok):
        await make_credential(user, platform)
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    adapters = publishers()

    result = await orchestrator_for(session_factory, adapters).publish(idea.id)

    assert result.state == WorkflowState.published
    assert set(result.succeeded) == {Platform.youtube, Platform.tiktok}
    stored = await load_idea(idea.id)
    assert stored.state == "published"
    assert stored.upload_links == {
        "youtube": "https://youtube.example.com/v/1",
        "tiktok": "https://tiktok.example.com/v/1",
    }
    assert stored.upload_progress == {"youtube": 100, "tiktok": 100}
    assert stored.published_at is not None
    # every job got the owner's own token and tier
    assert adapters[Platform.youtube].calls[0].access_token == "access-1"
    assert adapters[Platform.tiktok].calls[0].tier == SubscriptionTier.premium


async def test_missing_connection_blocks_every_platform(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube)
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    adapters = publishers()

    with pytest.raises(PreconditionError) as exc_info:
        await orchestrator_for(session_factory, adapters).publish(idea.id)

    assert exc_info.value.reason == "missing_connection"
    assert exc_info.value.platforms == ["tiktok"]
    assert all(not adapter.calls for adapter in adapters.values())
    stored = await load_idea(idea.id)
    assert stored.upload_status == {}
    assert stored.state == "publishing"


async def test_free_tier_cannot_publish_to_tiktok(session_factory, make_user, make_credential, make_idea):
    user = await make_user(tier="free")
    await make_credential(user, Platform.youtube)
    await make_credential(user, Platform.tiktok)
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    adapters = publishers()

    with pytest.raises(PreconditionError) as exc_info:
        await orchestrator_for(session_factory, adapters).publish(idea.id)

    assert exc_info.value.reason == "premium_required"
    assert exc_info.value.platforms == ["tiktok"]
    assert not adapters[Platform.youtube].calls


async def test_one_failure_gives_partial_success(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube)
    await make_credential(user, Platform.instagram, external_user_id="ig-1")
    idea = await make_idea(user, ["youtube", "instagram"], state=WorkflowState.publishing)
    adapters = publishers(instagram=FakePublisher(Platform.instagram, fail="Video processing failed"))

    result = await orchestrator_for(session_factory, adapters).publish(idea.id)

    assert result.state == WorkflowState.partial_success
    assert result.failed == [Platform.instagram]
    stored = await load_idea(idea.id)
    assert stored.state == "partial_success"
    assert stored.status == "partial_success"
    assert stored.upload_status == {"youtube": "completed", "instagram": "failed"}
    assert stored.upload_errors == {"instagram": "Video processing failed"}
    assert "instagram" not in stored.upload_links
    assert adapters[Platform.instagram].calls[0].external_user_id == "ig-1"


async def test_all_failures_give_publish_failed(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube)
    await make_credential(user, Platform.tiktok)
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    adapters = publishers(
        youtube=FakePublisher(Platform.youtube, fail="quota"),
        tiktok=FakePublisher(Platform.tiktok, fail="spam risk"),
    )

    result = await orchestrator_for(session_factory, adapters).publish(idea.id)

    assert result.state == WorkflowState.publish_failed
    stored = await load_idea(idea.id)
    assert (stored.state, stored.status, stored.approval_status) == ("publish_failed", "failed", "failed")
    assert set(stored.upload_errors) == {"youtube", "tiktok"}


async def test_unexpected_adapter_error_does_not_stop_siblings(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube)
    await make_credential(user, Platform.tiktok)
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    adapters = publishers(tiktok=FakePublisher(Platform.tiktok, raises=KeyError("data")))

    result = await orchestrator_for(session_factory, adapters).publish(idea.id)

    assert result.state == WorkflowState.partial_success
    stored = await load_idea(idea.id)
    assert stored.upload_status == {"youtube": "completed", "tiktok": "failed"}
    assert stored.upload_errors["tiktok"].startswith("Unexpected error: KeyError")


async def test_refresh_failure_becomes_platform_failure(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube, expires_in=timedelta(minutes=1))
    await make_credential(user, Platform.tiktok)
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    adapters = publishers()

    def token_endpoint(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    result = await orchestrator_for(session_factory, adapters, token_endpoint).publish(idea.id)

    assert result.state == WorkflowState.partial_success
    assert not adapters[Platform.youtube].calls
    assert result.results[Platform.youtube].success is False
    stored = await load_idea(idea.id)
    assert stored.upload_status == {"youtube": "failed", "tiktok": "completed"}
    assert "youtube" in stored.upload_errors


async def test_malformed_token_response_does_not_leave_idea_publishing(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube, expires_in=timedelta(minutes=-1))
    await make_credential(user, Platform.tiktok)
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    adapters = publishers()

    def token_endpoint(request):
        return httpx.Response(200, json={"access_token": "new", "expires_in": "soon"})

    result = await orchestrator_for(session_factory, adapters, token_endpoint).publish(idea.id)

    assert result.state == WorkflowState.published
    assert adapters[Platform.youtube].calls[0].access_token == "new"


async def test_refresh_lock_timeout_becomes_platform_failure(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube, expires_in=timedelta(minutes=1))
    await make_credential(user, Platform.tiktok)
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    adapters = publishers()

    @contextlib.asynccontextmanager
    async def busy_lock(user_id, platform):
        raise TimeoutError(f"Refresh lock refresh:{user_id}:{platform}: timed out after 30s")
        yield

    store = CredentialStore(session_factory)
    refresher = TokenRefresher(store, lock_factory=busy_lock)
    orchestrator = PublishOrchestrator(session_factory, store=store, refresher=refresher, publishers=adapters)

    result = await orchestrator.publish(idea.id)

    assert result.state == WorkflowState.partial_success
    assert result.results[Platform.youtube].retryable is True
    assert not adapters[Platform.youtube].calls
    stored = await load_idea(idea.id)
    assert stored.state == "partial_success"
    assert stored.upload_status == {"youtube": "failed", "tiktok": "completed"}
    assert stored.upload_errors["youtube"].startswith("Token refresh error: TimeoutError")


class WaitingPublisher(FakePublisher):
    """Finishes only once another platform's upload has started."""

    def __init__(self, platform, started):
        super().__init__(platform)
        self.started = started

    async def _upload(self, ctx):
        await asyncio.wait_for(self.started.wait(), timeout=2)
        return await super()._upload(ctx)


class SignallingPublisher(FakePublisher):
    def __init__(self, platform, started):
        super().__init__(platform)
        self.started = started

    async def _upload(self, ctx):
        self.started.set()
        return await super()._upload(ctx)


async def test_platform_jobs_run_concurrently(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube)
    await make_credential(user, Platform.tiktok)
    # youtube is dispatched first and waits on tiktok; sequential dispatch would time out
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    started = asyncio.Event()
    adapters = publishers(
        youtube=WaitingPublisher(Platform.youtube, started),
        tiktok=SignallingPublisher(Platform.tiktok, started),
    )

    result = await orchestrator_for(session_factory, adapters).publish(idea.id)

    assert result.state == WorkflowState.published
    stored = await load_idea(idea.id)
    assert stored.upload_status == {"youtube": "completed", "tiktok": "completed"}


async def test_persistence_error_raised_after_siblings_settle(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube)
    await make_credential(user, Platform.tiktok)
    idea = await make_idea(user, ["youtube", "tiktok"], state=WorkflowState.publishing)
    adapters = publishers(
        youtube=FakePublisher(Platform.youtube, raises=PersistenceError("disk full")),
        tiktok=FakePublisher(Platform.tiktok, delay=0.02),
    )

    with pytest.raises(PersistenceError):
        await orchestrator_for(session_factory, adapters).publish(idea.id)

    stored = await load_idea(idea.id)
    assert stored.upload_status["tiktok"] == "completed"
    # the aggregate is not written when status could not be recorded
    assert stored.state == "publishing"


async def test_requires_publishing_state(session_factory, make_user, make_credential, make_idea):
    user = await make_user()
    await make_credential(user, Platform.youtube)
    idea = await make_idea(user, ["youtube"], state=WorkflowState.ready_for_approval)

    with pytest.raises(InvalidTransition):
        await orchestrator_for(session_factory, publishers()).publish(idea.id)


async def test_republish_counts_earlier_successes(session_factory, make_user, make_credential, make_idea, load_idea):
    user = await make_user(tier="premium")
    await make_credential(user, Platform.youtube)
    await make_credential(user, Platform.tiktok)
    idea = await make_idea(
        user,
        ["youtube", "tiktok"],
        state=WorkflowState.partial_success,
        upload_status={"youtube": "completed", "tiktok": "failed"},
        upload_links={"youtube": "https://youtu.be/old"},
        upload_errors={"tiktok": "timeout"},
    )
    adapters = publishers()
    orchestrator = orchestrator_for(session_factory, adapters)

    targets = await orchestrator.republish_targets(idea.id)
    assert targets == [Platform.tiktok]
    with pytest.raises(PreconditionError) as exc_info:
        await orchestrator.republish_targets(idea.id, [Platform.youtube])
    assert exc_info.value.reason == "not_failed"

    async with session_factory() as session:
        stored = await approval.load_idea(session, idea.id)
        approval.begin_republish(stored)
        await approval.commit(session)

    result = await orchestrator.publish(idea.id, targets)

    assert result.state == WorkflowState.published
    assert not adapters[Platform.youtube].calls
    stored = await load_idea(idea.id)
    assert stored.upload_status == {"youtube": "completed", "tiktok": "completed"}
    assert stored.upload_links["youtube"] == "https://youtu.be/old"
    assert stored.upload_errors == {}


async def test_republish_only_from_partial_success(session_factory, make_user, make_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.published)

    with pytest.raises(InvalidTransition):
        await orchestrator_for(session_factory, publishers()).republish_targets(idea.id)


async def test_run_publish_closes_idea_when_connection_vanished(session_factory, make_user, make_idea, load_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.publishing)

    outcome = await run_publish(session_factory, idea.id, publishers=publishers())

    assert outcome["state"] == "publish_failed"
    assert outcome["error"]["error"] == "missing_connection"
    stored = await load_idea(idea.id)
    assert stored.state == "publish_failed"
    assert stored.state_detail


async def test_run_publish_returns_aggregate(session_factory, make_user, make_credential, make_idea):
    user = await make_user()
    await make_credential(user, Platform.youtube)
    idea = await make_idea(user, ["youtube"], state=WorkflowState.publishing)

    outcome = await run_publish(session_factory, idea.id, ["youtube"], publishers=publishers())

    assert outcome["state"] == "published"
    assert outcome["upload_status"] == {"youtube": "completed"}
    assert outcome["results"]["youtube"]["url"] == "https://youtube.example.com/v/1"
