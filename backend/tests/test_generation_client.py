import json

import httpx
import pytest

from conftest import mock_client_factory, no_network
from reelcast.models import Platform, VideoIdea
from reelcast.services.errors import GenerationRequestFailed
from reelcast.services.generation_client import IDEA_TEXT_LIMIT, GenerationClient
from reelcast.settings import get_settings

WEBHOOK = "https://hooks.example.com/generate"


def idea(**fields):
    return VideoIdea(
        id=3,
        user_id=1,
        idea_text=fields.pop("idea_text", "a cat surfing"),
        selected_platforms=fields.pop("selected_platforms", ["youtube", "tiktok"]),
        use_ai_voice=fields.pop("use_ai_voice", True),
        **fields,
    )


def test_payload_carries_connection_flags_only():
    payload = GenerationClient(WEBHOOK).build_payload(idea(idea_text="x" * 6000), "preview", [Platform.youtube])

    assert payload["video_idea_id"] == 3
    assert len(payload["video_idea"]) == IDEA_TEXT_LIMIT
    assert payload["selected_platforms"] == ["youtube", "tiktok"]
    assert payload["social_accounts"] == {"youtube": {"connected": True}}


async def test_request_parses_video_urls():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"video_file": "https://cdn.example.com/v.mp4"})

    client = GenerationClient(WEBHOOK, client_factory=mock_client_factory(handler))
    response = await client.request_generation(idea(), phase="final")

    assert response.video_file == "https://cdn.example.com/v.mp4"
    assert response.preview_video_url is None
    assert seen[0]["phase"] == "final"


async def test_non_json_acceptance_is_fine():
    def handler(request):
        return httpx.Response(200, text="Workflow was started")

    response = await GenerationClient(WEBHOOK, client_factory=mock_client_factory(handler)).request_generation(idea())

    assert response.video_file is None
    assert response.raw == {}


async def test_error_status_raises():
    def handler(request):
        return httpx.Response(500)

    with pytest.raises(GenerationRequestFailed, match="500"):
        await GenerationClient(WEBHOOK, client_factory=mock_client_factory(handler)).request_generation(idea())


async def test_unreachable_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GenerationRequestFailed):
        await GenerationClient(WEBHOOK, client_factory=mock_client_factory(handler)).request_generation(idea())


async def test_missing_webhook_url(monkeypatch):
    monkeypatch.setattr(get_settings(), "video_generation_webhook_url", None)
    with pytest.raises(GenerationRequestFailed):
        await GenerationClient(client_factory=mock_client_factory(no_network)).request_generation(idea())
