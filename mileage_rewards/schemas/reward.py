"""
Pydantic schemas for rewards. Token amounts are 8-decimal strings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from ..services.reward_state import amount_str, derived_fields


class RewardOut(BaseModel):
    id: str
    user_id: str
    type: str
    upload_id: Optional[str]
    status: str
    blockchain_status: str
    amount: str
    miles_driven: float
    carbon_saved: float
    description: Optional[str]
    proof_data: Optional[dict[str, Any]]
    blockchain_data: Optional[dict[str, Any]]
    tx_ref: Optional[str]
    retry_count: int
    failure_reason: Optional[str]
    processed_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    failed_at: Optional[datetime]
    created_at: datetime
    updated_at: Optional[datetime]

    is_pending: bool
    is_processing: bool
    is_completed: bool
    is_failed: bool
    is_cancelled: bool
    is_blockchain_pending: bool
    is_blockchain_sent: bool
    is_blockchain_confirmed: bool
    is_blockchain_failed: bool
    can_retry: bool
    can_be_cancelled: bool
    can_be_retried: bool
    formatted_amount: str
    formatted_miles: str
    formatted_carbon_saved: str
    carbon_saved_kg: float
    formatted_carbon_saved_kg: str
    reward_per_mile: float
    formatted_reward_per_mile: str
    carbon_efficiency: float
    formatted_carbon_efficiency: str
    processing_time_ms: int
    confirmation_time_ms: int
    total_processing_time_ms: int
    formatted_processing_time: str
    formatted_confirmation_time: str
    formatted_total_processing_time: str

    @classmethod
    def from_reward(cls, reward) -> "RewardOut":
        return cls(
            id=reward.id,
            user_id=reward.user_id,
            type=reward.type,
            upload_id=reward.upload_id,
            status=reward.status,
            blockchain_status=reward.blockchain_status,
            amount=amount_str(reward.amount),
            miles_driven=float(reward.miles_driven or 0),
            carbon_saved=float(reward.carbon_saved or 0),
            description=reward.description,
            proof_data=reward.proof_data,
            blockchain_data=reward.blockchain_data,
            tx_ref=reward.tx_ref,
            retry_count=reward.retry_count or 0,
            failure_reason=reward.failure_reason,
            processed_at=reward.processed_at,
            confirmed_at=reward.confirmed_at,
            failed_at=reward.failed_at,
            created_at=reward.created_at,
            updated_at=reward.updated_at,
            **derived_fields(reward),
        )


class RewardPage(BaseModel):
    items: list[RewardOut]
    total: int
    page: int
    page_size: int


class RewardStatsOut(BaseModel):
    total: int
    total_amount: str
    total_miles: float
    total_carbon_saved_kg: float
    by_type: dict[str, int]
    by_status: dict[str, int]
    by_blockchain_status: dict[str, int]
    average_amount: str
    average_miles: float
    average_carbon_saved_kg: float
    most_active_day: Optional[str]
    most_active_day_count: int
