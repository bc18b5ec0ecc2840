from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from .models import Platform, SubscriptionTier, VideoIdea
from .services.generation_client import IDEA_TEXT_LIMIT


class VideoIdeaCreate(BaseModel):
    idea_text: str = Field(min_length=1, max_length=IDEA_TEXT_LIMIT)
    selected_platforms: list[str] = Field(min_length=1)
    caption: str | None = None
    environment_prompt: str | None = None
    sound_prompt: str | None = None
    use_ai_voice: bool = True
    voice_file_url: str | None = None

    @field_validator("idea_text")
    @classmethod
    def strip_idea(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("idea_text must not be blank")
        return value

    @field_validator("selected_platforms")
    @classmethod
    def normalize_platforms(cls, value: list[str]) -> list[str]:
        normalized = [(p or "").strip().lower() for p in value]
        if len(set(normalized)) != len(normalized):
            raise ValueError("selected_platforms must not contain duplicates")
        return normalized


class RejectRequest(BaseModel):
    reason: str | None = None


class RepublishRequest(BaseModel):
    platforms: list[str] | None = None


class RefreshRequest(BaseModel):
    force: bool = False


class PlatformUpload(BaseModel):
    status: str | None = None
    progress: int = 0
    error: str | None = None
    url: str | None = None
    external_id: str | None = None


class VideoIdeaRead(BaseModel):
    id: int
    idea_text: str
    caption: str | None = None
    youtube_title: str | None = None
    tiktok_title: str | None = None
    instagram_title: str | None = None
    environment_prompt: str | None = None
    sound_prompt: str | None = None
    selected_platforms: list[str]
    video_url: str | None = None
    preview_video_url: str | None = None
    state: str
    state_detail: str | None = None
    status: str
    approval_status: str
    uploads: dict[str, PlatformUpload]
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    published_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, idea: VideoIdea) -> "VideoIdeaRead":
        uploads = {}
        for platform in idea.selected_platforms or []:
            uploads[platform] = PlatformUpload(
                status=(idea.upload_status or {}).get(platform),
                progress=(idea.upload_progress or {}).get(platform, 0),
                error=(idea.upload_errors or {}).get(platform),
                url=(idea.upload_links or {}).get(platform),
                external_id=(idea.upload_external_ids or {}).get(platform),
            )
        return cls(
            id=idea.id,
            idea_text=idea.idea_text,
            caption=idea.caption,
            youtube_title=idea.youtube_title,
            tiktok_title=idea.tiktok_title,
            instagram_title=idea.instagram_title,
            environment_prompt=idea.environment_prompt,
            sound_prompt=idea.sound_prompt,
            selected_platforms=list(idea.selected_platforms or []),
            video_url=idea.video_url,
            preview_video_url=idea.preview_video_url,
            state=idea.state,
            state_detail=idea.state_detail,
            status=idea.status,
            approval_status=idea.approval_status,
            uploads=uploads,
            approved_at=idea.approved_at,
            rejected_at=idea.rejected_at,
            published_at=idea.published_at,
            created_at=idea.created_at,
            updated_at=idea.updated_at,
        )


class CredentialRead(BaseModel):
    platform: Platform
    connected: bool = True
    expires_at: datetime | None = None
    has_refresh_token: bool
    external_user_id: str | None = None
    scope: str | None = None


class TokenIssueRequest(BaseModel):
    admin_password: str
    email: str
    subscription_tier: SubscriptionTier = SubscriptionTier.free
    credits: int | None = Field(default=None, ge=0)


class TokenIssueResponse(BaseModel):
    user_id: int
    token: str


class ProfileRead(BaseModel):
    id: int
    email: str
    subscription_tier: SubscriptionTier
    credits: int

    class Config:
        from_attributes = True


# ── Pipeline callbacks ───────────────────────────────────────

class VideoReadyPayload(BaseModel):
    video_idea_id: int
    idea: str
    caption: str
    final_output: str
    youtube_title: str | None = None
    tiktok_title: str | None = None
    instagram_title: str | None = None
    environment_prompt: str | None = None
    sound_prompt: str | None = None

    @field_validator("final_output")
    @classmethod
    def require_video_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("final_output must not be blank")
        return value


class PreviewReadyPayload(BaseModel):
    video_idea_id: int
    preview_video_url: str

    @field_validator("preview_video_url")
    @classmethod
    def require_preview_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("preview_video_url must not be blank")
        return value


class ApprovalResponsePayload(BaseModel):
    video_idea_id: int
    status: str
    platform_links: dict[str, str] | None = None
    error_message: str | None = None

    @field_validator("status")
    @classmethod
    def known_status(cls, value: str) -> str:
        if value not in ("upload_complete", "upload_failed", "rejected"):
            raise ValueError("status must be upload_complete, upload_failed or rejected")
        return value

    @field_validator("platform_links")
    @classmethod
    def known_platforms(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        if value is None:
            return value
        return {Platform.parse(k).value: v for k, v in value.items()}


class GenerationFailedPayload(BaseModel):
    video_idea_id: int
    error_message: str | None = None
