"""create pipeline schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "rooms",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "name", name="uq_rooms_user_name"),
    )
    op.create_index(op.f("ix_rooms_user_id"), "rooms", ["user_id"], unique=False)

    op.create_table(
        "tags",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "name", name="uq_tags_user_name"),
    )
    op.create_index(op.f("ix_tags_user_id"), "tags", ["user_id"], unique=False)

    op.create_table(
        "assets",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("media_type", sa.String(), nullable=False),
        sa.Column("media_url", sa.String(), nullable=False),
        sa.Column("is_source_video", sa.Boolean(), nullable=False),
        sa.Column("source_video_id", sa.String(), nullable=True),
        sa.Column("item_timestamp", sa.Float(), nullable=True),
        sa.Column("estimated_value", sa.Float(), nullable=True),
        sa.Column("is_processed", sa.Boolean(), nullable=False),
        sa.Column("room_id", sa.String(), nullable=True),
        sa.Column("client_reference_id", sa.String(), nullable=True),
        sa.Column("mux_asset_id", sa.String(), nullable=True),
        sa.Column("mux_upload_id", sa.String(), nullable=True),
        sa.Column("mux_correlation_id", sa.String(), nullable=True),
        sa.Column("mux_processing_status", sa.String(), nullable=True),
        sa.Column("mux_playback_id", sa.String(), nullable=True),
        sa.Column("mux_duration", sa.Float(), nullable=True),
        sa.Column("mux_aspect_ratio", sa.String(), nullable=True),
        sa.Column("mux_max_resolution", sa.String(), nullable=True),
        sa.Column("mux_audio_url", sa.String(), nullable=True),
        sa.Column("transcript", sa.JSON(), nullable=True),
        sa.Column("transcript_text", sa.Text(), nullable=True),
        sa.Column("transcript_processing_status", sa.String(), nullable=True),
        sa.Column("transcript_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["source_video_id"], ["assets.id"]),
        sa.ForeignKeyConstraint(["room_id"], ["rooms.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_assets_user_id"), "assets", ["user_id"], unique=False)
    op.create_index(op.f("ix_assets_source_video_id"), "assets", ["source_video_id"], unique=False)
    op.create_index(op.f("ix_assets_room_id"), "assets", ["room_id"], unique=False)
    op.create_index(op.f("ix_assets_mux_asset_id"), "assets", ["mux_asset_id"], unique=False)
    op.create_index(op.f("ix_assets_mux_upload_id"), "assets", ["mux_upload_id"], unique=False)
    op.create_index(op.f("ix_assets_mux_correlation_id"), "assets", ["mux_correlation_id"], unique=False)

    op.create_table(
        "asset_tags",
        sa.Column("asset_id", sa.String(), nullable=False),
        sa.Column("tag_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("asset_id", "tag_id"),
    )

    op.create_table(
        "scratch_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("mux_asset_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("video_timestamp", sa.Float(), nullable=True),
        sa.Column("estimated_value", sa.Float(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_scratch_items_user_id"), "scratch_items", ["user_id"], unique=False)
    op.create_index(op.f("ix_scratch_items_mux_asset_id"), "scratch_items", ["mux_asset_id"], unique=False)
    op.create_index(op.f("ix_scratch_items_correlation_id"), "scratch_items", ["correlation_id"], unique=False)

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("mux_asset_id", sa.String(), nullable=True),
        sa.Column("mux_upload_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("asset_id", sa.String(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_webhook_events_event_id"), "webhook_events", ["event_id"], unique=True)
    op.create_index(op.f("ix_webhook_events_event_type"), "webhook_events", ["event_type"], unique=False)
    op.create_index(op.f("ix_webhook_events_mux_asset_id"), "webhook_events", ["mux_asset_id"], unique=False)
    op.create_index(op.f("ix_webhook_events_mux_upload_id"), "webhook_events", ["mux_upload_id"], unique=False)
    op.create_index(op.f("ix_webhook_events_correlation_id"), "webhook_events", ["correlation_id"], unique=False)
    op.create_index(op.f("ix_webhook_events_asset_id"), "webhook_events", ["asset_id"], unique=False)
    op.create_index(op.f("ix_webhook_events_processed"), "webhook_events", ["processed"], unique=False)
    op.create_index(op.f("ix_webhook_events_created_at"), "webhook_events", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("scratch_items")
    op.drop_table("asset_tags")
    op.drop_table("assets")
    op.drop_table("tags")
    op.drop_table("rooms")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
