"""add saved ai provider model profiles

Revision ID: 0002_ai_provider_models
Revises: 0001_ai_pipeline
Create Date: 2026-10-18 16:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_ai_provider_models"
down_revision = "0001_ai_pipeline"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ai_provider_models",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("scope", sa.String(length=32), nullable=False, server_default="global"),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("model", sa.String(length=255), nullable=False),
        sa.Column("base_url", sa.String(length=2048), nullable=True),
        sa.Column("response_language", sa.String(length=64), nullable=True),
        sa.Column("max_tokens", sa.Integer(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("api_key_encrypted", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("scope", "provider", "model", name="uq_ai_provider_models_scope_provider_model"),
    )


def downgrade() -> None:
    op.drop_table("ai_provider_models")
