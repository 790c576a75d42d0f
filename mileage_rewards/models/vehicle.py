"""
ORM model for a user's registered vehicles.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


class Vehicle(Base):
    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    vehicle_type: Mapped[str] = mapped_column(String(32), default="car")
    make: Mapped[str | None] = mapped_column(String(64), nullable=True)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    plate_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # kg CO2 per km
    emission_factor: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal("0.2"))
    total_mileage: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total_carbon_saved: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=Decimal("0"))
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
