"""
ORM model for reward recipients.

Only the columns the reward flow touches live here; profile data is owned
elsewhere.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    wallet_address: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    # Only the confirmation reconciler increments this.
    token_balance: Mapped[Decimal] = mapped_column(Numeric(28, 8), default=Decimal("0"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
