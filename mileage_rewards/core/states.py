"""Status vocabularies stored in string columns."""

from __future__ import annotations

from enum import Enum


class UploadStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ValidationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FLAGGED = "flagged"


class RewardStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BlockchainStatus(str, Enum):
    NOT_SENT = "not_sent"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class RewardType(str, Enum):
    UPLOAD = "upload"
    BADGE = "badge"
    CHALLENGE = "challenge"
    MILESTONE = "milestone"
    LEADERBOARD = "leaderboard"
    BONUS = "bonus"
    REFERRAL = "referral"


class VehicleType(str, Enum):
    CAR = "car"
    SUV = "suv"
    MOTORCYCLE = "motorcycle"
    SCOOTER = "scooter"
    TRUCK = "truck"
    ELECTRIC = "electric"
    HYBRID = "hybrid"
    PLUGIN_HYBRID = "plugin_hybrid"
    FUEL_CELL = "fuel_cell"
    VAN = "van"
    OTHER = "other"


class HistoryEventType(str, Enum):
    REWARD_CREATED = "reward_created"
    REWARD_PROCESSING = "reward_processing"
    REWARD_DISTRIBUTED = "reward_distributed"
    REWARD_CONFIRMED = "reward_confirmed"
    REWARD_FAILED = "reward_failed"
    REWARD_RETRIED = "reward_retried"
    REWARD_CANCELLED = "reward_cancelled"
