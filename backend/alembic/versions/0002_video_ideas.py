"""video ideas with workflow state and per-platform upload maps

Revision ID: 0002_video_ideas
Revises: 0001_user_profiles_and_credentials
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_video_ideas"
down_revision: Union[str, None] = "0001_user_profiles_and_credentials"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "video_ideas",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("idea_text", sa.Text(), nullable=False),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("youtube_title", sa.Text(), nullable=True),
        sa.Column("tiktok_title", sa.Text(), nullable=True),
        sa.Column("instagram_title", sa.Text(), nullable=True),
        sa.Column("environment_prompt", sa.Text(), nullable=True),
        sa.Column("sound_prompt", sa.Text(), nullable=True),
        sa.Column("use_ai_voice", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("voice_file_url", sa.Text(), nullable=True),
        sa.Column("selected_platforms", sa.JSON(), nullable=False),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("preview_video_url", sa.Text(), nullable=True),
        sa.Column("state", sa.String(32), nullable=False, server_default="submitted"),
        sa.Column("state_detail", sa.Text(), nullable=True),
        sa.Column("upload_status", sa.JSON(), nullable=False),
        sa.Column("upload_progress", sa.JSON(), nullable=False),
        sa.Column("upload_errors", sa.JSON(), nullable=False),
        sa.Column("upload_links", sa.JSON(), nullable=False),
        sa.Column("upload_external_ids", sa.JSON(), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_video_ideas_user_id", "video_ideas", ["user_id"])
    op.create_index("ix_video_ideas_state", "video_ideas", ["state"])


def downgrade() -> None:
    op.drop_index("ix_video_ideas_state", table_name="video_ideas")
    op.drop_index("ix_video_ideas_user_id", table_name="video_ideas")
    op.drop_table("video_ideas")
