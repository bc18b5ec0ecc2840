import json

import pytest
from sqlalchemy import select

from reelcast.models import WebhookLog, WorkflowState
from reelcast.routes_webhooks import signature_for, verify_request
from reelcast.settings import get_settings


def video_ready_body(video_idea_id, **extra):
    return {
        "video_idea_id": video_idea_id,
        "idea": "cat video",
        "caption": "Cats!",
        "final_output": "https://cdn.example.com/final.mp4",
        "youtube_title": "Cat compilation",
        **extra,
    }


async def webhook_logs(session_factory):
    async with session_factory() as session:
        return list((await session.execute(select(WebhookLog).order_by(WebhookLog.id))).scalars().all())


def test_verify_request():
    body = b'{"a": 1}'
    assert verify_request(None, body, None, None)
    assert verify_request("s3", body, signature_for("s3", body), None)
    assert verify_request("s3", body, None, "s3")
    assert not verify_request("s3", body, signature_for("other", body), None)
    assert not verify_request("s3", body, None, None)


async def test_video_ready_moves_idea_to_approval(client, session_factory, make_user, make_idea, load_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.generating, video_url=None)

    resp = await client.post("/api/webhooks/video-ready", json=video_ready_body(idea.id))

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert (data["state"], data["status"], data["approval_status"]) == ("ready_for_approval", "completed", "ready_for_approval")
    stored = await load_idea(idea.id)
    assert stored.video_url == "https://cdn.example.com/final.mp4"
    assert stored.youtube_title == "Cat compilation"
    assert stored.caption == "Cats!"

    logs = await webhook_logs(session_factory)
    assert [(log.webhook_type, log.status, log.video_idea_id) for log in logs] == [("video_ready", "processed", idea.id)]
    assert logs[0].webhook_id == data["webhook_id"]


async def test_missing_fields_are_rejected(client, session_factory, make_user, make_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.generating)

    resp = await client.post("/api/webhooks/video-ready", json={"video_idea_id": idea.id})

    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "invalid_payload"
    assert "final_output" in resp.json()["detail"]["message"]
    logs = await webhook_logs(session_factory)
    assert logs[0].status == "rejected"


@pytest.mark.parametrize("final_output", ["", "   "])
async def test_blank_final_output_is_rejected(client, session_factory, make_user, make_idea, load_idea, final_output):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.generating, video_url=None)

    resp = await client.post("/api/webhooks/video-ready", json=video_ready_body(idea.id, final_output=final_output))

    assert resp.status_code == 400
    assert "final_output" in resp.json()["detail"]["message"]
    stored = await load_idea(idea.id)
    assert stored.state == "generating"
    assert stored.video_url is None


async def test_blank_preview_url_is_rejected(client, make_user, make_idea, load_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.generating, video_url=None)

    resp = await client.post(
        "/api/webhooks/preview-ready", json={"video_idea_id": idea.id, "preview_video_url": ""}
    )

    assert resp.status_code == 400
    assert (await load_idea(idea.id)).state == "generating"


async def test_non_json_body_is_rejected(client):
    resp = await client.post(
        "/api/webhooks/preview-ready", content=b"not json", headers={"content-type": "application/json"}
    )
    assert resp.status_code == 400


async def test_unknown_idea_is_404(client):
    resp = await client.post("/api/webhooks/video-ready", json=video_ready_body(4040))
    assert resp.status_code == 404
    assert resp.json()["detail"]["video_idea_id"] == 4040


async def test_callback_for_finished_idea_is_conflict(client, make_user, make_idea, load_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.published)

    resp = await client.post("/api/webhooks/video-ready", json=video_ready_body(idea.id))

    assert resp.status_code == 409
    assert resp.json()["detail"]["current"] == "published"
    assert (await load_idea(idea.id)).state == "published"


async def test_preview_then_generation_failed(client, make_user, make_idea, load_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.submitted, video_url=None)

    resp = await client.post(
        "/api/webhooks/preview-ready",
        json={"video_idea_id": idea.id, "preview_video_url": "https://cdn.example.com/p.mp4"},
    )
    assert resp.json()["status"] == "preview_ready"

    other = await make_idea(user, ["youtube"], state=WorkflowState.generating, video_url=None)
    resp = await client.post(
        "/api/webhooks/generation-failed",
        json={"video_idea_id": other.id, "error_message": "render crashed"},
    )
    assert resp.status_code == 200
    stored = await load_idea(other.id)
    assert stored.state == "generation_failed"
    assert stored.state_detail == "render crashed"


async def test_approval_response_records_links(client, make_user, make_idea, load_idea):
    user = await make_user(tier="premium")
    idea = await make_idea(user, ["youtube", "tiktok"])

    resp = await client.post(
        "/api/webhooks/approval-response",
        json={
            "video_idea_id": idea.id,
            "status": "upload_complete",
            "platform_links": {"YouTube": "https://youtu.be/abc"},
            "error_message": "tiktok: spam risk",
        },
    )

    assert resp.status_code == 200
    assert resp.json()["state"] == "partial_success"
    stored = await load_idea(idea.id)
    assert stored.upload_links == {"youtube": "https://youtu.be/abc"}


async def test_approval_response_unknown_status(client, make_user, make_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"])
    resp = await client.post(
        "/api/webhooks/approval-response", json={"video_idea_id": idea.id, "status": "done"}
    )
    assert resp.status_code == 400


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(get_settings(), "webhook_secret", "hook-secret")
    return "hook-secret"


async def test_secret_required_when_configured(client, session_factory, webhook_secret, make_user, make_idea, load_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.generating)

    resp = await client.post("/api/webhooks/video-ready", json=video_ready_body(idea.id))

    assert resp.status_code == 401
    assert (await load_idea(idea.id)).state == "generating"
    logs = await webhook_logs(session_factory)
    assert logs[0].status == "rejected"
    assert logs[0].error_message == "unauthorized"


async def test_signed_body_is_accepted(client, webhook_secret, make_user, make_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.generating)
    body = json.dumps(video_ready_body(idea.id)).encode()

    resp = await client.post(
        "/api/webhooks/video-ready",
        content=body,
        headers={"content-type": "application/json", "x-webhook-signature": signature_for(webhook_secret, body)},
    )

    assert resp.status_code == 200


async def test_shared_secret_header_is_accepted(client, webhook_secret, make_user, make_idea):
    user = await make_user()
    idea = await make_idea(user, ["youtube"], state=WorkflowState.generating)

    resp = await client.post(
        "/api/webhooks/video-ready",
        json=video_ready_body(idea.id),
        headers={"x-webhook-secret": webhook_secret},
    )

    assert resp.status_code == 200
