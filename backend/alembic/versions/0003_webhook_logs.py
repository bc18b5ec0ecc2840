"""webhook logs

Revision ID: 0003_webhook_logs
Revises: 0002_video_ideas
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0003_webhook_logs"
down_revision: Union[str, None] = "0002_video_ideas"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("webhook_id", sa.String(16), nullable=False),
        sa.Column("webhook_type", sa.String(64), nullable=False),
        sa.Column("video_idea_id", sa.Integer(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="received"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_webhook_logs_webhook_id", "webhook_logs", ["webhook_id"])
    op.create_index("ix_webhook_logs_video_idea_id", "webhook_logs", ["video_idea_id"])


def downgrade() -> None:
    op.drop_index("ix_webhook_logs_video_idea_id", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_webhook_id", table_name="webhook_logs")
    op.drop_table("webhook_logs")
