"""
ORM model for odometer photo uploads and everything derived from them.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


class OdometerUpload(Base):
    __tablename__ = "odometer_uploads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    vehicle_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("vehicles.id", ondelete="SET NULL"), index=True, nullable=True)

    image_url: Mapped[str] = mapped_column(String(1024))
    thumbnail_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    storage_key: Mapped[str] = mapped_column(String(512))
    image_hash: Mapped[str] = mapped_column(String(64), index=True)
    file_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(16), index=True, default="processing")
    validation_status: Mapped[str] = mapped_column(String(16), index=True, default="pending")
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)

    extracted_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # 0..1
    ocr_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    ocr_raw_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    ocr_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ocr_bounding_box: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    ai_analysis: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    vehicle_detected: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    ai_validation: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    vehicle_match: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    final_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mileage_delta: Mapped[float | None] = mapped_column(Float, nullable=True)
    # kg CO2
    carbon_saved: Mapped[float | None] = mapped_column(Float, nullable=True)

    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ocr_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ai_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    validation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_odometer_uploads_baseline", "user_id", "vehicle_id", "validation_status", "created_at"),
    )
