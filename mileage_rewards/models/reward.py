"""
ORM model for token rewards and their ledger lifecycle.

`status` is the business axis and `blockchain_status` the ledger axis; the
allowed combinations are listed in services.reward_state.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


class Reward(Base):
    __tablename__ = "rewards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    type: Mapped[str] = mapped_column(String(16), index=True, default="upload")
    # Unique so a re-run of the pipeline cannot create a second upload reward.
    upload_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("odometer_uploads.id", ondelete="SET NULL"), unique=True, nullable=True
    )

    status: Mapped[str] = mapped_column(String(16), index=True, default="pending")
    blockchain_status: Mapped[str] = mapped_column(String(16), index=True, default="not_sent")

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    miles_driven: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    # grams CO2
    carbon_saved: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    proof_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    blockchain_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    extra: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    tx_ref: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_rewards_status_blockchain_created", "status", "blockchain_status", "created_at"),
    )
