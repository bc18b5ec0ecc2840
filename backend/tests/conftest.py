from __future__ import annotations

import hashlib
import os
from datetime import datetime, timedelta, timezone

# Must be set before reelcast.db builds its engine
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["CELERY_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["REFRESH_LOCK_BACKEND"] = "local"
os.environ.pop("WEBHOOK_SECRET", None)
os.environ.pop("N8N_WEBHOOK_SECRET", None)

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from reelcast.db import Base, get_session, get_session_factory
from reelcast.models import Platform, PlatformCredential, UserProfile, VideoIdea, WorkflowState
from reelcast.services import notify, refresh_lock
from reelcast.settings import get_settings


@pytest.fixture(autouse=True)
def _reset_process_state(monkeypatch):
    refresh_lock._local_locks.clear()
    notify._sent_at.clear()
    settings = get_settings()
    monkeypatch.setattr(settings, "webhook_secret", None)
    monkeypatch.setattr(settings, "celery_enabled", False)
    monkeypatch.setattr(settings, "telegram_bot_token", None)
    yield
    refresh_lock._local_locks.clear()


@pytest.fixture
async def engine(tmp_path):
    # file-backed so concurrent platform jobs get their own connections
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reelcast.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


def mock_client_factory(handler):
    """httpx client factory whose requests go to `handler` instead of the network."""
    transport = httpx.MockTransport(handler)
    return lambda: httpx.AsyncClient(transport=transport)


def no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected HTTP call: {request.method} {request.url}")


@pytest.fixture
def make_user(session_factory):
    async def _make(tier: str = "free", credits: int = 5, token: str | None = None, email: str | None = None) -> UserProfile:
        async with session_factory() as session:
            user = UserProfile(
                email=email or f"user-{os.urandom(4).hex()}@example.com",
                subscription_tier=tier,
                credits=credits,
                api_token_hash=hashlib.sha256(token.encode()).hexdigest() if token else None,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user
    return _make


@pytest.fixture
def make_credential(session_factory):
    async def _make(
        user: UserProfile,
        platform: Platform,
        *,
        access_token: str = "access-1",
        refresh_token: str | None = "refresh-1",
        expires_in: timedelta | None = timedelta(hours=1),
        external_user_id: str | None = None,
    ) -> PlatformCredential:
        async with session_factory() as session:
            credential = PlatformCredential(
                user_id=user.id,
                platform=platform.value,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=datetime.now(timezone.utc) + expires_in if expires_in is not None else None,
                external_user_id=external_user_id,
            )
            session.add(credential)
            await session.commit()
            await session.refresh(credential)
            return credential
    return _make


@pytest.fixture
def make_idea(session_factory):
    async def _make(
        user: UserProfile,
        platforms: list[str],
        *,
        state: WorkflowState = WorkflowState.ready_for_approval,
        video_url: str | None = "https://cdn.example.com/video.mp4",
        **fields,
    ) -> VideoIdea:
        async with session_factory() as session:
            idea = VideoIdea(
                user_id=user.id,
                idea_text=fields.pop("idea_text", "cat video"),
                caption=fields.pop("caption", "A cat doing cat things"),
                selected_platforms=platforms,
                video_url=video_url,
                state=state.value,
                **fields,
            )
            session.add(idea)
            await session.commit()
            await session.refresh(idea)
            return idea
    return _make


@pytest.fixture
def load_idea(session_factory):
    async def _load(video_idea_id: int) -> VideoIdea:
        async with session_factory() as session:
            return await session.get(VideoIdea, video_idea_id)
    return _load


@pytest.fixture
async def app(session_factory):
    from reelcast.main import app

    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
