"""user profiles and platform credentials

Revision ID: 0001_user_profiles_and_credentials
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_user_profiles_and_credentials"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("subscription_tier", sa.String(16), nullable=False, server_default="free"),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("api_token_hash", sa.String(64), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_user_profiles_api_token_hash", "user_profiles", ["api_token_hash"])

    op.create_table(
        "platform_credentials",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_user_id", sa.String(255), nullable=True),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("user_id", "platform", name="uq_platform_credentials_user_platform"),
    )
    op.create_index("ix_platform_credentials_user_id", "platform_credentials", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_platform_credentials_user_id", table_name="platform_credentials")
    op.drop_table("platform_credentials")
    op.drop_index("ix_user_profiles_api_token_hash", table_name="user_profiles")
    op.drop_table("user_profiles")
