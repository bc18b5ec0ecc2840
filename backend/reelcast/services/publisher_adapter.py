"""
Unified publishing layer for destination platforms.

Each platform adapter implements the `PublisherAdapter` interface:
    publish(ctx) -> PublishResult

The base class reports `uploading` before the platform protocol starts and
`completed` / `failed` when it concludes. Results (including errors) are always
returned explicitly; adapters never raise out of publish().
"""
from __future__ import annotations

import abc
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

import httpx

from reelcast.models import Platform, SubscriptionTier, UploadState, VideoIdea
from reelcast.services.errors import AdapterUploadError
from reelcast.services.polling import PollFailed, PollTimeout, poll_until
from reelcast.services.tier_gate import can_access
from reelcast.settings import get_settings

logger = logging.getLogger(__name__)


# ── Error classification ─────────────────────────────────────

# Errors that are worth a manual re-publish (network, rate-limit, transient)
RETRYABLE_INDICATORS = (
    "timeout", "timed out", "429", "too many requests",
    "502", "503", "504", "connection", "reset by peer",
    "temporary", "service unavailable", "rate limit",
    "network", "ssl", "eof", "broken pipe",
)


def _is_retryable_error(error: str | None) -> bool:
    if not error:
        return False
    lower = error.lower()
    return any(ind in lower for ind in RETRYABLE_INDICATORS)


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"access_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "access_token=***"),
    (re.compile(r"refresh_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "refresh_token=***"),
    (re.compile(r"client_secret=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "client_secret=***"),
    (re.compile(r"\"access_token\"\s*:\s*\"[^\"]+\"", re.IGNORECASE), "\"access_token\": \"***\""),
    # Generic long token-like strings (40+ chars)
    (re.compile(r"[A-Za-z0-9\-_]{40,}"), "***TOKEN***"),
]


def sanitize(text: str | None) -> str | None:
    """Strip credentials and tokens from error messages / response text."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


# ── Upload inputs ────────────────────────────────────────────

YOUTUBE_TITLE_LIMIT = 100


def truncate_title(title: str, limit: int = YOUTUBE_TITLE_LIMIT) -> str:
    if len(title) <= limit:
        return title
    return title[: limit - 3] + "..."


@dataclass
class UploadMetadata:
    title: str
    caption: str = ""

    @classmethod
    def for_platform(cls, idea: VideoIdea, platform: Platform) -> "UploadMetadata":
        caption = idea.caption or idea.idea_text or ""
        per_platform = {
            Platform.youtube: idea.youtube_title,
            Platform.tiktok: idea.tiktok_title,
            Platform.instagram: idea.instagram_title,
        }.get(platform)
        return cls(title=per_platform or idea.idea_text or "", caption=caption)


class ProgressReporter(Protocol):
    async def report(
        self,
        platform: Platform,
        state: UploadState,
        *,
        progress: int | None = None,
        error: str | None = None,
        url: str | None = None,
        external_id: str | None = None,
    ) -> bool: ...


class VideoSource:
    """Downloads the rendered video once and shares the bytes between platform jobs."""

    def __init__(self, video_url: str, client_factory: Callable[[], httpx.AsyncClient] | None = None):
        self.video_url = video_url
        self._client_factory = client_factory or _default_client
        self._lock = asyncio.Lock()
        self._content: bytes | None = None
        self._error: AdapterUploadError | None = None

    async def read(self) -> bytes:
        async with self._lock:
            if self._content is not None:
                return self._content
            if self._error is not None:
                raise self._error
            try:
                async with self._client_factory() as client:
                    resp = await client.get(self.video_url, follow_redirects=True)
            except httpx.HTTPError as exc:
                self._error = AdapterUploadError(sanitize(f"Failed to download video: {type(exc).__name__}: {exc}"))
                raise self._error from exc
            if resp.status_code != 200:
                self._error = AdapterUploadError(f"Failed to download video: HTTP {resp.status_code}")
                raise self._error
            self._content = resp.content
            logger.info(f"[video-source] Downloaded {len(self._content)} bytes")
            return self._content


@dataclass
class UploadContext:
    video_idea_id: int
    access_token: str
    video_url: str
    metadata: UploadMetadata
    reporter: ProgressReporter
    video_source: VideoSource | None = None
    tier: SubscriptionTier = SubscriptionTier.free
    external_user_id: str | None = None

    async def video_bytes(self) -> bytes:
        if self.video_source is None:
            self.video_source = VideoSource(self.video_url)
        return await self.video_source.read()


@dataclass
class PublishResult:
    """Unified result of a publish attempt."""
    success: bool
    external_id: str | None = None
    url: str | None = None
    platform: str | None = None
    error: str | None = None
    retryable: bool = False
    raw_response: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "external_id": self.external_id,
            "url": self.url,
            "platform": self.platform,
            "error": self.error,
            "retryable": self.retryable,
        }


def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=get_settings().http_timeout_sec)


# ── Abstract adapter ─────────────────────────────────────────

class PublisherAdapter(abc.ABC):
    """Base class for platform-specific publishers."""

    platform: Platform

    def __init__(self, client_factory: Callable[[], httpx.AsyncClient] | None = None):
        self._client_factory = client_factory or _default_client

    async def publish(self, ctx: UploadContext) -> PublishResult:
        await ctx.reporter.report(self.platform, UploadState.uploading, progress=0)
        try:
            external_id, url = await self._upload(ctx)
        except AdapterUploadError as exc:
            return await self._fail(ctx, str(exc))
        except httpx.HTTPError as exc:
            return await self._fail(ctx, f"{type(exc).__name__}: {exc}")

        await ctx.reporter.report(
            self.platform, UploadState.completed, progress=100, url=url, external_id=external_id
        )
        self._log(ctx.video_idea_id, f"Published: {url}")
        return PublishResult(success=True, external_id=external_id, url=url, platform=self.platform.value)

    @abc.abstractmethod
    async def _upload(self, ctx: UploadContext) -> tuple[str, str]:
        """Run the platform protocol; return (external_id, public url) or raise AdapterUploadError."""
        ...

    async def _fail(self, ctx: UploadContext, message: str) -> PublishResult:
        msg = sanitize(message)
        self._error(ctx.video_idea_id, msg)
        await ctx.reporter.report(self.platform, UploadState.failed, error=msg)
        return PublishResult(success=False, platform=self.platform.value, error=msg, retryable=_is_retryable_error(msg))

    async def _progress(self, ctx: UploadContext, value: int) -> None:
        await ctx.reporter.report(self.platform, UploadState.uploading, progress=value)

    def _log(self, video_idea_id: int, msg: str):
        logger.info(f"[{self.platform.value}][idea={video_idea_id}] {msg}")

    def _error(self, video_idea_id: int, msg: str):
        logger.error(f"[{self.platform.value}][idea={video_idea_id}] {msg}")


def _json(resp: httpx.Response, step: str) -> dict:
    try:
        data = resp.json()
    except ValueError as exc:
        raise AdapterUploadError(f"{step}: response is not JSON") from exc
    if not isinstance(data, dict):
        raise AdapterUploadError(f"{step}: unexpected response shape")
    return data


# ── YouTube ──────────────────────────────────────────────────

class YouTubePublisher(PublisherAdapter):
    """Upload via YouTube Data API v3 resumable upload (metadata POST, then one PUT)."""

    platform = Platform.youtube

    UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"
    WATCH_URL = "https://www.youtube.com/watch?v={id}"

    async def _upload(self, ctx: UploadContext) -> tuple[str, str]:
        content = await ctx.video_bytes()
        metadata = {
            "snippet": {
                "title": truncate_title(ctx.metadata.title),
                "description": ctx.metadata.caption[:5000],
                "categoryId": "22",  # People & Blogs
            },
            "status": {
                "privacyStatus": "public",
                "selfDeclaredMadeForKids": False,
            },
        }

        async with self._client_factory() as client:
            self._log(ctx.video_idea_id, f"Starting resumable upload ({len(content)} bytes)")
            init_resp = await client.post(
                self.UPLOAD_URL,
                params={"uploadType": "resumable", "part": "snippet,status"},
                headers={
                    "Authorization": f"Bearer {ctx.access_token}",
                    "X-Upload-Content-Type": "video/mp4",
                    "X-Upload-Content-Length": str(len(content)),
                },
                json=metadata,
            )
            if init_resp.status_code not in (200, 201):
                raise AdapterUploadError(
                    f"YouTube init upload failed: {init_resp.status_code}: {init_resp.text[:500]}"
                )
            session_url = init_resp.headers.get("location")
            if not session_url:
                raise AdapterUploadError("YouTube did not return an upload session URL")
            await self._progress(ctx, 10)

            upload_resp = await client.put(
                session_url,
                headers={"Authorization": f"Bearer {ctx.access_token}", "Content-Type": "video/mp4"},
                content=content,
            )
            if upload_resp.status_code not in (200, 201):
                raise AdapterUploadError(
                    f"YouTube upload failed: {upload_resp.status_code}: {upload_resp.text[:500]}"
                )
            video_id = _json(upload_resp, "YouTube upload").get("id")
            if not video_id:
                raise AdapterUploadError("YouTube upload response has no video id")

        return str(video_id), self.WATCH_URL.format(id=video_id)


# ── TikTok ───────────────────────────────────────────────────

class TikTokPublisher(PublisherAdapter):
    """Content Posting API: init → single-chunk PUT → commit."""

    platform = Platform.tiktok

    INIT_URL = "https://open.tiktokapis.com/v2/post/publish/video/init/"
    COMMIT_URL = "https://open.tiktokapis.com/v2/post/publish/video/commit/"
    FALLBACK_URL = "https://www.tiktok.com/"

    async def _upload(self, ctx: UploadContext) -> tuple[str, str]:
        if not can_access(ctx.tier, self.platform):
            raise AdapterUploadError("TikTok uploads require a Premium or Pro subscription")

        content = await ctx.video_bytes()
        size = len(content)
        auth = {"Authorization": f"Bearer {ctx.access_token}"}

        async with self._client_factory() as client:
            init_resp = await client.post(
                self.INIT_URL,
                headers=auth,
                json={
                    "post_info": {
                        "title": ctx.metadata.title[:2200],
                        "description": ctx.metadata.caption,
                        "privacy_level": "SELF_ONLY",
                        "disable_duet": False,
                        "disable_comment": False,
                        "disable_stitch": False,
                        "video_cover_timestamp_ms": 1000,
                    },
                    "source_info": {
                        "source": "FILE_UPLOAD",
                        "video_size": size,
                        "chunk_size": size,
                        "total_chunk_count": 1,
                    },
                },
            )
            if init_resp.status_code >= 300:
                raise AdapterUploadError(f"TikTok upload init failed: {init_resp.status_code}: {init_resp.text[:500]}")
            data = _json(init_resp, "TikTok init").get("data") or {}
            publish_id = data.get("publish_id")
            upload_url = data.get("upload_url")
            if not publish_id or not upload_url:
                raise AdapterUploadError("TikTok init response is missing publish_id / upload_url")
            await self._progress(ctx, 10)

            put_resp = await client.put(
                upload_url,
                headers={"Content-Range": f"bytes 0-{size - 1}/{size}", "Content-Type": "video/mp4"},
                content=content,
            )
            if put_resp.status_code >= 300:
                raise AdapterUploadError(f"TikTok video upload failed: {put_resp.status_code}: {put_resp.text[:500]}")
            await self._progress(ctx, 80)

            commit_resp = await client.post(self.COMMIT_URL, headers=auth, json={"publish_id": publish_id})
            if commit_resp.status_code >= 300:
                raise AdapterUploadError(f"TikTok commit failed: {commit_resp.status_code}: {commit_resp.text[:500]}")
            share_url = (_json(commit_resp, "TikTok commit").get("data") or {}).get("share_url")

        return str(publish_id), share_url or self.FALLBACK_URL


# ── Instagram Reels ──────────────────────────────────────────

class InstagramPublisher(PublisherAdapter):
    """Graph API: create REELS container → poll status_code → media_publish → permalink."""

    platform = Platform.instagram

    GRAPH_URL = "https://graph.facebook.com/v18.0"

    def __init__(
        self,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        *,
        poll_interval_sec: float | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(client_factory)
        settings = get_settings()
        self.poll_interval_sec = settings.instagram_poll_interval_sec if poll_interval_sec is None else poll_interval_sec
        self.max_attempts = settings.instagram_poll_max_attempts if max_attempts is None else max_attempts
        self._sleep = sleep

    async def _upload(self, ctx: UploadContext) -> tuple[str, str]:
        ig_user_id = ctx.external_user_id
        if not ig_user_id:
            raise AdapterUploadError("Instagram account id is unknown; reconnect the account")

        async with self._client_factory() as client:
            container_resp = await client.post(
                f"{self.GRAPH_URL}/{ig_user_id}/media",
                json={
                    "media_type": "REELS",
                    "video_url": ctx.video_url,
                    "caption": ctx.metadata.caption,
                    "access_token": ctx.access_token,
                },
            )
            if container_resp.status_code >= 300:
                raise AdapterUploadError(
                    f"Media container creation failed: {container_resp.status_code}: {container_resp.text[:500]}"
                )
            creation_id = _json(container_resp, "Instagram container").get("id")
            if not creation_id:
                raise AdapterUploadError("Instagram container response has no id")
            await self._progress(ctx, 10)

            async def check_status() -> str | None:
                resp = await client.get(
                    f"{self.GRAPH_URL}/{creation_id}",
                    params={"fields": "status_code", "access_token": ctx.access_token},
                )
                if resp.status_code != 200:
                    return None
                return _json(resp, "Instagram status").get("status_code")

            try:
                await poll_until(
                    check_status,
                    is_done=lambda code: code == "FINISHED",
                    is_failed=lambda code: code == "ERROR",
                    interval_sec=self.poll_interval_sec,
                    max_attempts=self.max_attempts,
                    sleep=self._sleep,
                    label=f"instagram:{ctx.video_idea_id}",
                )
            except PollFailed as exc:
                raise AdapterUploadError("Video processing failed") from exc
            except PollTimeout as exc:
                raise AdapterUploadError("Upload timeout - video processing took too long") from exc
            await self._progress(ctx, 80)

            publish_resp = await client.post(
                f"{self.GRAPH_URL}/{ig_user_id}/media_publish",
                json={"creation_id": creation_id, "access_token": ctx.access_token},
            )
            if publish_resp.status_code >= 300:
                raise AdapterUploadError(f"Media publish failed: {publish_resp.status_code}: {publish_resp.text[:500]}")
            media_id = _json(publish_resp, "Instagram publish").get("id")
            if not media_id:
                raise AdapterUploadError("Instagram publish response has no media id")

            permalink = await self._permalink(client, str(media_id), ctx)

        return str(media_id), permalink

    async def _permalink(self, client: httpx.AsyncClient, media_id: str, ctx: UploadContext) -> str:
        """Best effort; the post is already live when this runs."""
        try:
            resp = await client.get(
                f"{self.GRAPH_URL}/{media_id}",
                params={"fields": "permalink", "access_token": ctx.access_token},
            )
            if resp.status_code == 200:
                permalink = _json(resp, "Permalink lookup").get("permalink")
                return permalink if isinstance(permalink, str) else ""
        except (httpx.HTTPError, AdapterUploadError) as exc:
            self._log(ctx.video_idea_id, f"Permalink lookup failed: {type(exc).__name__}")
        return ""


# ── Registry ──────────────────────────────────────────────────

_ADAPTER_CLASSES: dict[str, type[PublisherAdapter]] = {
    "youtube": YouTubePublisher,
    "tiktok": TikTokPublisher,
    "instagram": InstagramPublisher,
}

_ADAPTERS: dict[str, PublisherAdapter] = {}


def get_publisher(platform: Platform | str) -> PublisherAdapter | None:
    """Get publisher adapter for a given platform (case-insensitive)."""
    key = getattr(platform, "value", platform).lower()
    if key not in _ADAPTER_CLASSES:
        return None
    if key not in _ADAPTERS:
        _ADAPTERS[key] = _ADAPTER_CLASSES[key]()
    return _ADAPTERS[key]


def list_publishers() -> list[str]:
    return list(_ADAPTER_CLASSES.keys())
