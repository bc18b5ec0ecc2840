"""
Inbound callbacks from the generation pipeline.

When WEBHOOK_SECRET is configured every request must carry either
`X-Webhook-Signature: sha256=<hex hmac of the raw body>` or
`X-Webhook-Secret: <secret>`. Every callback is recorded in webhook_logs.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import VideoIdea, WebhookLog
from .schemas import (
    ApprovalResponsePayload,
    GenerationFailedPayload,
    PreviewReadyPayload,
    VideoReadyPayload,
)
from .services import approval
from .services.errors import (
    CallbackValidationError,
    InvalidTransition,
    PersistenceError,
    VideoIdeaNotFound,
)
from .settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SessionDep = Depends(get_session)


def signature_for(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_request(secret: str | None, body: bytes, signature: str | None, shared_secret: str | None) -> bool:
    if not secret:
        return True
    if signature and hmac.compare_digest(signature_for(secret, body), signature.strip()):
        return True
    if shared_secret and hmac.compare_digest(shared_secret.encode(), secret.encode()):
        return True
    return False


def _parse(body: bytes, model: type[BaseModel]) -> BaseModel:
    try:
        data = json.loads(body or b"{}")
    except ValueError as exc:
        raise CallbackValidationError("Body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise CallbackValidationError("Body must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise CallbackValidationError(f"Missing or invalid fields: {', '.join(fields)}") from exc


async def _log(
    session: AsyncSession,
    webhook_id: str,
    webhook_type: str,
    payload: dict | None,
    status_: str,
    video_idea_id: int | None = None,
    error_message: str | None = None,
) -> None:
    session.add(WebhookLog(
        webhook_id=webhook_id,
        webhook_type=webhook_type,
        video_idea_id=video_idea_id,
        payload=payload,
        status=status_,
        error_message=error_message,
    ))
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(f"[webhook:{webhook_id}] could not write webhook log")


def _payload_dict(body: bytes) -> dict | None:
    try:
        data = json.loads(body or b"null")
    except ValueError:
        return {"raw": body[:2000].decode("utf-8", "replace")}
    return data if isinstance(data, dict) else {"raw": data}


async def _handle(
    request: Request,
    session: AsyncSession,
    webhook_type: str,
    model: type[BaseModel],
    apply: Callable[[VideoIdea, BaseModel], None],
) -> dict:
    webhook_id = secrets.token_hex(4)
    body = await request.body()
    payload = _payload_dict(body)
    logger.info(f"[webhook:{webhook_id}] {webhook_type} received")

    if not verify_request(
        get_settings().webhook_secret,
        body,
        request.headers.get("x-webhook-signature"),
        request.headers.get("x-webhook-secret"),
    ):
        logger.warning(f"[webhook:{webhook_id}] rejected: bad signature")
        await _log(session, webhook_id, webhook_type, None, "rejected", error_message="unauthorized")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail={"error": "unauthorized"})

    try:
        data = _parse(body, model)
    except CallbackValidationError as exc:
        await _log(session, webhook_id, webhook_type, payload, "rejected", error_message=str(exc))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_payload", "message": str(exc), "webhook_id": webhook_id},
        )

    video_idea_id = data.video_idea_id
    try:
        idea = await approval.load_idea(session, video_idea_id)
        apply(idea, data)
        await approval.commit(session)
    except VideoIdeaNotFound:
        await _log(session, webhook_id, webhook_type, payload, "rejected", video_idea_id, "video idea not found")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "video_idea_id": video_idea_id, "webhook_id": webhook_id},
        )
    except InvalidTransition as exc:
        await session.rollback()
        await _log(session, webhook_id, webhook_type, payload, "rejected", video_idea_id, str(exc))
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "invalid_transition", "current": exc.current, "target": exc.target, "webhook_id": webhook_id},
        )
    except PersistenceError as exc:
        logger.error(f"[webhook:{webhook_id}] persistence failure: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "persistence_failed", "webhook_id": webhook_id},
        )

    await _log(session, webhook_id, webhook_type, payload, "processed", video_idea_id)
    logger.info(f"[webhook:{webhook_id}] {webhook_type} applied to idea {video_idea_id} -> {idea.state}")
    return {
        "success": True,
        "webhook_id": webhook_id,
        "video_idea_id": video_idea_id,
        "state": idea.state,
        "status": idea.status,
        "approval_status": idea.approval_status,
    }


def _apply_video_ready(idea: VideoIdea, data: VideoReadyPayload) -> None:
    approval.mark_ready_for_approval(
        idea,
        data.final_output,
        caption=data.caption,
        youtube_title=data.youtube_title,
        tiktok_title=data.tiktok_title,
        instagram_title=data.instagram_title,
        environment_prompt=data.environment_prompt,
        sound_prompt=data.sound_prompt,
    )
    if not idea.idea_text:
        idea.idea_text = data.idea


def _apply_preview_ready(idea: VideoIdea, data: PreviewReadyPayload) -> None:
    approval.mark_preview_ready(idea, data.preview_video_url)


def _apply_approval_response(idea: VideoIdea, data: ApprovalResponsePayload) -> None:
    approval.apply_pipeline_publish_result(idea, data.status, data.platform_links, data.error_message)


def _apply_generation_failed(idea: VideoIdea, data: GenerationFailedPayload) -> None:
    approval.mark_generation_failed(idea, data.error_message)


@router.post("/video-ready")
async def video_ready(request: Request, session: AsyncSession = SessionDep):
    """Final render is available; the idea moves to ready_for_approval."""
    return await _handle(request, session, "video_ready", VideoReadyPayload, _apply_video_ready)


@router.post("/preview-ready")
async def preview_ready(request: Request, session: AsyncSession = SessionDep):
    return await _handle(request, session, "preview_ready", PreviewReadyPayload, _apply_preview_ready)


@router.post("/approval-response")
async def approval_response(request: Request, session: AsyncSession = SessionDep):
    """Publish outcome when the pipeline performed the uploads itself."""
    return await _handle(request, session, "approval_response", ApprovalResponsePayload, _apply_approval_response)


@router.post("/generation-failed")
async def generation_failed(request: Request, session: AsyncSession = SessionDep):
    return await _handle(request, session, "generation_failed", GenerationFailedPayload, _apply_generation_failed)
