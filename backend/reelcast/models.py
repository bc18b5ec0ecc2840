from __future__ import annotations

from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


class Platform(str, Enum):
    youtube = "youtube"
    tiktok = "tiktok"
    instagram = "instagram"
    threads = "threads"
    facebook = "facebook"
    x = "x"
    linkedin = "linkedin"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Case-insensitive lookup ("YouTube" -> Platform.youtube); ValueError on unknown names."""
        return cls((value or "").strip().lower())


class SubscriptionTier(str, Enum):
    free = "free"
    premium = "premium"
    pro = "pro"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {SubscriptionTier.free: 0, SubscriptionTier.premium: 1, SubscriptionTier.pro: 2}


class UploadState(str, Enum):
    pending = "pending"
    uploading = "uploading"
    completed = "completed"
    failed = "failed"


class WorkflowState(str, Enum):
    submitted = "submitted"
    generating = "generating"
    preview_ready = "preview_ready"
    ready_for_approval = "ready_for_approval"
    publishing = "publishing"
    published = "published"
    partial_success = "partial_success"
    publish_failed = "publish_failed"
    generation_failed = "generation_failed"
    rejected = "rejected"


# state -> (status, approval_status) as rendered to clients
STATE_AXES: dict[WorkflowState, tuple[str, str]] = {
    WorkflowState.submitted: ("pending", "pending"),
    WorkflowState.generating: ("processing", "pending"),
    WorkflowState.preview_ready: ("preview_ready", "preview_ready"),
    WorkflowState.ready_for_approval: ("completed", "ready_for_approval"),
    WorkflowState.publishing: ("publishing", "approved"),
    WorkflowState.published: ("published", "published"),
    WorkflowState.partial_success: ("partial_success", "published"),
    WorkflowState.publish_failed: ("failed", "failed"),
    WorkflowState.generation_failed: ("failed", "failed"),
    WorkflowState.rejected: ("rejected", "rejected"),
}


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(sa.String(255), unique=True, nullable=False)
    subscription_tier: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default=SubscriptionTier.free.value)
    credits: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    api_token_hash: Mapped[str | None] = mapped_column(sa.String(64), unique=True, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    credentials: Mapped[list["PlatformCredential"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    video_ideas: Mapped[list["VideoIdea"]] = relationship(back_populates="user", passive_deletes=True)

    @property
    def tier(self) -> SubscriptionTier:
        return SubscriptionTier(self.subscription_tier)


class PlatformCredential(Base):
    __tablename__ = "platform_credentials"
    __table_args__ = (sa.UniqueConstraint("user_id", "platform", name="uq_platform_credentials_user_platform"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    access_token: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    external_user_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    scope: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    user: Mapped[UserProfile] = relationship(back_populates="credentials")


class VideoIdea(Base):
    __tablename__ = "video_ideas"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    idea_text: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    caption: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    youtube_title: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    tiktok_title: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    instagram_title: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    environment_prompt: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    sound_prompt: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    use_ai_voice: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.true())
    voice_file_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    selected_platforms: Mapped[list] = mapped_column(sa.JSON(), nullable=False, default=list)
    video_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    preview_video_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    state: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=WorkflowState.submitted.value, index=True)
    state_detail: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    # Per-platform bookkeeping, keyed by Platform value
    upload_status: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    upload_progress: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    upload_errors: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    upload_links: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    upload_external_ids: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    approved_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    user: Mapped[UserProfile] = relationship(back_populates="video_ideas")

    @property
    def workflow_state(self) -> WorkflowState:
        return WorkflowState(self.state)

    @property
    def status(self) -> str:
        return STATE_AXES[self.workflow_state][0]

    @property
    def approval_status(self) -> str:
        return STATE_AXES[self.workflow_state][1]

    @property
    def platforms(self) -> list[Platform]:
        return [Platform.parse(p) for p in (self.selected_platforms or [])]


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    webhook_id: Mapped[str] = mapped_column(sa.String(16), nullable=False, index=True)
    webhook_type: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    video_idea_id: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True, index=True)
    payload: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="received")
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
