"""create ai pipeline tables

Revision ID: 0001_ai_pipeline
Revises:
Create Date: 2026-10-18 12:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_ai_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(length=36), primary_key=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _status() -> sa.Column:
    return sa.Column("status", sa.String(length=16), nullable=False, server_default="queued")


def _idea_fk() -> sa.Column:
    return sa.Column("idea_id", sa.String(length=36), sa.ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "projects",
        _id(),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
    )
    op.create_table(
        "personas",
        _id(),
        sa.Column("project_id", sa.String(length=36), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("age", sa.Integer(), nullable=True),
        sa.Column("archetype_tone", sa.String(length=120), nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("visual_code", sa.Text(), nullable=True),
        sa.Column("voice_code", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_table(
        "policy_rules",
        _id(),
        sa.Column("persona_id", sa.String(length=36), sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=True),
        sa.Column("type", sa.String(length=8), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(length=8), nullable=False),
        _created_at(),
    )
    op.create_table(
        "prompt_templates",
        _id(),
        sa.Column("persona_id", sa.String(length=36), sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=True),
        sa.Column("key", sa.String(length=32), nullable=False),
        sa.Column("template", sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_prompt_templates_key_persona", "prompt_templates", ["key", "persona_id"])

    op.create_table(
        "ideas",
        _id(),
        sa.Column("project_id", sa.String(length=36), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("persona_id", sa.String(length=36), sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("topic", sa.String(length=280), nullable=False),
        sa.Column("hook", sa.Text(), nullable=False),
        sa.Column("format", sa.String(length=16), nullable=False),
        _status(),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("image_prompt", sa.Text(), nullable=True),
        sa.Column("video_prompt", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_ideas_created_at", "ideas", ["created_at"])
    op.create_index("ix_ideas_project_created", "ideas", ["project_id", "created_at", "id"])

    op.create_table(
        "scripts",
        _id(),
        _idea_fk(),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("shot_list", sa.JSON(), nullable=True),
        _status(),
        sa.Column("error", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_scripts_idea_id", "scripts", ["idea_id"])

    op.create_table(
        "captions",
        _id(),
        _idea_fk(),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("hashtags", sa.JSON(), nullable=True),
        _status(),
        sa.Column("error", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_captions_idea_id", "captions", ["idea_id"])

    op.create_table(
        "assets",
        _id(),
        _idea_fk(),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("url", sa.String(length=2048), nullable=True),
        sa.Column("mime", sa.String(length=128), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("source_prompt", sa.Text(), nullable=True),
        sa.Column("provider", sa.String(length=64), nullable=True),
        _status(),
        sa.Column("error", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_assets_idea_type_created", "assets", ["idea_id", "type", "created_at"])

    op.create_table(
        "ai_run_logs",
        _id(),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("model", sa.String(length=64), nullable=False),
        sa.Column("operation", sa.String(length=32), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=True),
        sa.Column("idea_id", sa.String(length=36), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("tokens", sa.Integer(), nullable=True),
        sa.Column("request_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("raw_response", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_ai_run_logs_project_id", "ai_run_logs", ["project_id"])
    op.create_index("ix_ai_run_logs_idea_id", "ai_run_logs", ["idea_id"])
    op.create_index("ix_ai_run_logs_created_at", "ai_run_logs", ["created_at"])

    op.create_table(
        "ai_provider_settings",
        _id(),
        sa.Column("scope", sa.String(length=32), nullable=False, unique=True, server_default="global"),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("model", sa.String(length=255), nullable=True),
        sa.Column("api_key_encrypted", sa.Text(), nullable=True),
        sa.Column("base_url", sa.String(length=2048), nullable=True),
        sa.Column("response_language", sa.String(length=64), nullable=True),
        sa.Column("max_tokens", sa.Integer(), nullable=True),
        sa.Column("ai_test_mode", sa.Boolean(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
    )

    op.create_table(
        "post_drafts",
        _id(),
        _idea_fk(),
        sa.Column(
            "caption_id", sa.String(length=36), sa.ForeignKey("captions.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("selected_assets", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_post_drafts_idea_created", "post_drafts", ["idea_id", "created_at"])

    op.create_table(
        "moderation_checks",
        _id(),
        sa.Column(
            "post_draft_id",
            sa.String(length=36),
            sa.ForeignKey("post_drafts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("checks", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_moderation_checks_draft_created", "moderation_checks", ["post_draft_id", "created_at"])


def downgrade() -> None:
    op.drop_table("moderation_checks")
    op.drop_table("post_drafts")
    op.drop_table("ai_provider_settings")
    op.drop_table("ai_run_logs")
    op.drop_table("assets")
    op.drop_table("captions")
    op.drop_table("scripts")
    op.drop_table("ideas")
    op.drop_table("prompt_templates")
    op.drop_table("policy_rules")
    op.drop_table("personas")
    op.drop_table("projects")
