"""
SQLAlchemy model base class for the mileage rewards backend.

This package defines ORM models for users, vehicles, odometer uploads,
rewards and the reward history trail. All models should inherit from the
declarative `Base` defined here.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


from .user import User  # noqa: E402,F401
from .vehicle import Vehicle  # noqa: E402,F401
from .odometer_upload import OdometerUpload  # noqa: E402,F401
from .reward import Reward  # noqa: E402,F401
from .history_event import HistoryEvent  # noqa: E402,F401

__all__ = [
    "Base",

    # Users / Fleet
    "User",
    "Vehicle",

    # Uploads
    "OdometerUpload",

    # Rewards
    "Reward",
    "HistoryEvent",
]
