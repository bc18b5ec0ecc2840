"""
Client for the external video generation pipeline (n8n webhook).

Only connection flags are sent for social accounts; tokens never leave the backend.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

import httpx

from reelcast.models import Platform, VideoIdea
from reelcast.services.errors import GenerationRequestFailed
from reelcast.settings import get_settings

logger = logging.getLogger(__name__)

IDEA_TEXT_LIMIT = 5000


@dataclass
class GenerationResponse:
    video_file: str | None = None
    preview_video_url: str | None = None
    raw: dict = field(default_factory=dict)


class GenerationClient:
    def __init__(
        self,
        webhook_url: str | None = None,
        *,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        settings = get_settings()
        self.webhook_url = webhook_url or settings.video_generation_webhook_url
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=settings.http_timeout_sec)
        )

    def build_payload(self, idea: VideoIdea, phase: str, connected: list[Platform]) -> dict:
        return {
            "phase": phase,
            "video_idea_id": idea.id,
            "video_idea": (idea.idea_text or "")[:IDEA_TEXT_LIMIT],
            "selected_platforms": [p.value for p in idea.platforms],
            "social_accounts": {p.value: {"connected": True} for p in connected},
            "use_ai_voice": bool(idea.use_ai_voice),
            "voice_file_url": idea.voice_file_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def request_generation(
        self,
        idea: VideoIdea,
        phase: str = "preview",
        connected_platforms: list[Platform] | None = None,
    ) -> GenerationResponse:
        if not self.webhook_url:
            raise GenerationRequestFailed("VIDEO_GENERATION_WEBHOOK_URL is not configured")

        payload = self.build_payload(idea, phase, connected_platforms or [])
        logger.info(f"[generation][idea={idea.id}] requesting phase={phase}")
        try:
            async with self._client_factory() as client:
                resp = await client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as exc:
            raise GenerationRequestFailed(f"Generation webhook unreachable: {type(exc).__name__}") from exc

        if resp.status_code >= 300:
            raise GenerationRequestFailed(f"Webhook failed with status: {resp.status_code}")

        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        logger.info(f"[generation][idea={idea.id}] accepted ({resp.status_code})")
        return GenerationResponse(
            video_file=data.get("video_file") or None,
            preview_video_url=data.get("preview_video_url") or None,
            raw=data,
        )
