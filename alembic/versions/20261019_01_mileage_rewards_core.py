"""Create users, vehicles, odometer uploads, rewards and history events.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=256), nullable=True, unique=True),
        sa.Column("wallet_address", sa.String(length=128), nullable=True),
        sa.Column("token_balance", sa.Numeric(28, 8), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_wallet_address", "users", ["wallet_address"])

    op.create_table(
        "vehicles",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("vehicle_type", sa.String(length=32), nullable=False),
        sa.Column("make", sa.String(length=64), nullable=True),
        sa.Column("model", sa.String(length=64), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("plate_number", sa.String(length=32), nullable=True),
        sa.Column("emission_factor", sa.Numeric(10, 4), nullable=False),
        sa.Column("total_mileage", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_carbon_saved", sa.Numeric(14, 4), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_vehicles_user_id", "vehicles", ["user_id"])
    op.create_index("ix_vehicles_is_active", "vehicles", ["is_active"])

    op.create_table(
        "odometer_uploads",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("vehicle_id", sa.String(length=36), sa.ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("image_url", sa.String(length=1024), nullable=False),
        sa.Column("thumbnail_url", sa.String(length=1024), nullable=True),
        sa.Column("storage_key", sa.String(length=512), nullable=False),
        sa.Column("image_hash", sa.String(length=64), nullable=False),
        sa.Column("file_size_bytes", sa.Integer(), nullable=True),
        sa.Column("content_type", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("validation_status", sa.String(length=16), nullable=False),
        sa.Column("is_approved", sa.Boolean(), nullable=False),
        sa.Column("extracted_mileage", sa.Integer(), nullable=True),
        sa.Column("ocr_confidence", sa.Float(), nullable=True),
        sa.Column("ocr_raw_text", sa.Text(), nullable=True),
        sa.Column("ocr_method", sa.String(length=32), nullable=True),
        sa.Column("ocr_bounding_box", sa.JSON(), nullable=True),
        sa.Column("ai_analysis", sa.JSON(), nullable=True),
        sa.Column("vehicle_detected", sa.JSON(), nullable=True),
        sa.Column("ai_validation", sa.JSON(), nullable=True),
        sa.Column("vehicle_match", sa.JSON(), nullable=True),
        sa.Column("final_mileage", sa.Integer(), nullable=True),
        sa.Column("previous_mileage", sa.Integer(), nullable=True),
        sa.Column("mileage_delta", sa.Float(), nullable=True),
        sa.Column("carbon_saved", sa.Float(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("ocr_time_ms", sa.Integer(), nullable=True),
        sa.Column("ai_time_ms", sa.Integer(), nullable=True),
        sa.Column("validation_notes", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_odometer_uploads_user_id", "odometer_uploads", ["user_id"])
    op.create_index("ix_odometer_uploads_vehicle_id", "odometer_uploads", ["vehicle_id"])
    op.create_index("ix_odometer_uploads_image_hash", "odometer_uploads", ["image_hash"])
    op.create_index("ix_odometer_uploads_status", "odometer_uploads", ["status"])
    op.create_index("ix_odometer_uploads_validation_status", "odometer_uploads", ["validation_status"])
    op.create_index(
        "ix_odometer_uploads_baseline",
        "odometer_uploads",
        ["user_id", "vehicle_id", "validation_status", "created_at"],
    )

    op.create_table(
        "rewards",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column(
            "upload_id",
            sa.String(length=36),
            sa.ForeignKey("odometer_uploads.id", ondelete="SET NULL"),
            nullable=True,
            unique=True,
        ),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("blockchain_status", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Numeric(18, 8), nullable=False),
        sa.Column("miles_driven", sa.Numeric(10, 2), nullable=False),
        sa.Column("carbon_saved", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("proof_data", sa.JSON(), nullable=True),
        sa.Column("blockchain_data", sa.JSON(), nullable=True),
        sa.Column("extra", sa.JSON(), nullable=True),
        sa.Column("tx_ref", sa.String(length=128), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_rewards_user_id", "rewards", ["user_id"])
    op.create_index("ix_rewards_type", "rewards", ["type"])
    op.create_index("ix_rewards_status", "rewards", ["status"])
    op.create_index("ix_rewards_blockchain_status", "rewards", ["blockchain_status"])
    op.create_index("ix_rewards_tx_ref", "rewards", ["tx_ref"])
    op.create_index("ix_rewards_status_blockchain_created", "rewards", ["status", "blockchain_status", "created_at"])

    op.create_table(
        "history_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("reward_id", sa.String(length=36), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_history_events_event_type", "history_events", ["event_type"])
    op.create_index("ix_history_events_user_id", "history_events", ["user_id"])
    op.create_index("ix_history_events_reward_id", "history_events", ["reward_id"])
    op.create_index("ix_history_events_user_created", "history_events", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_table("history_events")
    op.drop_table("rewards")
    op.drop_table("odometer_uploads")
    op.drop_table("vehicles")
    op.drop_table("users")
