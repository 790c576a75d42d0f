"""
Combined business/ledger state machine for rewards and derived read-only fields.

A reward's position is the pair (status, blockchain_status). Only the pairs
and moves in `TRANSITIONS` are legal. The helpers below take persisted
column values rather than ORM objects so they can be used on rows, API
payloads and test fixtures alike.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from ..core.errors import RewardStateError
from ..core.states import BlockchainStatus, RewardStatus


MAX_RETRIES = 3
TOKEN_SYMBOL = "RWD"
AMOUNT_QUANT = Decimal("0.00000001")

PENDING = (RewardStatus.PENDING.value, BlockchainStatus.NOT_SENT.value)
IN_FLIGHT = (RewardStatus.PROCESSING.value, BlockchainStatus.SENT.value)
CONFIRMED = (RewardStatus.COMPLETED.value, BlockchainStatus.CONFIRMED.value)
FAILED = (RewardStatus.FAILED.value, BlockchainStatus.FAILED.value)
CANCELLED = (RewardStatus.CANCELLED.value, BlockchainStatus.NOT_SENT.value)

TRANSITIONS: dict[tuple[tuple[str, str], str], tuple[str, str]] = {
    (PENDING, "claim"): IN_FLIGHT,
    (PENDING, "cancel"): CANCELLED,
    (IN_FLIGHT, "confirm"): CONFIRMED,
    (IN_FLIGHT, "revert"): FAILED,
    (IN_FLIGHT, "submit_failed"): FAILED,
    (FAILED, "retry"): PENDING,
}

TERMINAL_STATES = {CONFIRMED, CANCELLED}


def next_state(status: str, blockchain_status: str, action: str) -> tuple[str, str]:
    target = TRANSITIONS.get(((status, blockchain_status), action))
    if target is None:
        raise RewardStateError(
            f"Cannot {action} a reward in state {status}/{blockchain_status}",
            context={"status": status, "blockchain_status": blockchain_status, "action": action},
        )
    return target


def can_retry(blockchain_status: str, retry_count: Optional[int]) -> bool:
    return blockchain_status == BlockchainStatus.FAILED.value and (retry_count or 0) < MAX_RETRIES


def can_be_cancelled(status: str, blockchain_status: str) -> bool:
    return (status, blockchain_status) == PENDING


def can_be_retried(status: str, blockchain_status: str, retry_count: Optional[int]) -> bool:
    return (status, blockchain_status) == FAILED and can_retry(blockchain_status, retry_count)


def quantize_amount(value) -> Decimal:
    return Decimal(str(value)).quantize(AMOUNT_QUANT, rounding=ROUND_HALF_UP)


def amount_str(value) -> str:
    """Amounts leave the service as fixed 8-decimal strings."""
    return f"{quantize_amount(value):.8f}"


def format_amount(amount) -> str:
    return f"{amount_str(amount)} {TOKEN_SYMBOL}"


def format_miles(miles) -> str:
    return f"{float(miles or 0):.1f} miles"


def format_carbon_grams(grams) -> str:
    return f"{float(grams or 0):.2f}g CO2"


def carbon_kg(grams) -> float:
    return float(grams or 0) / 1000


def format_carbon_kg(grams) -> str:
    return f"{carbon_kg(grams):.3f}kg CO2"


def reward_per_mile(amount, miles) -> float:
    miles = float(miles or 0)
    return float(amount or 0) / miles if miles > 0 else 0.0


def format_reward_per_mile(amount, miles) -> str:
    return f"{reward_per_mile(amount, miles):.6f} {TOKEN_SYMBOL}/mile"


def carbon_efficiency(amount, grams) -> float:
    kg = carbon_kg(grams)
    return float(amount or 0) / kg if kg > 0 else 0.0


def format_carbon_efficiency(amount, grams) -> str:
    return f"{carbon_efficiency(amount, grams):.4f} {TOKEN_SYMBOL}/kg CO2"


def duration_ms(start: Optional[datetime], end: Optional[datetime]) -> int:
    if start is None or end is None:
        return 0
    if (start.tzinfo is None) != (end.tzinfo is None):
        start = start.replace(tzinfo=None)
        end = end.replace(tzinfo=None)
    return int((end - start).total_seconds() * 1000)


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    return f"{ms / 60000:.1f}m"


def derived_fields(reward) -> dict:
    status = reward.status
    chain = reward.blockchain_status
    retries = reward.retry_count or 0
    processing_ms = duration_ms(reward.created_at, reward.processed_at)
    confirmation_ms = duration_ms(reward.processed_at, reward.confirmed_at)
    total_ms = duration_ms(reward.created_at, reward.confirmed_at)
    return {
        "is_pending": status == RewardStatus.PENDING.value,
        "is_processing": status == RewardStatus.PROCESSING.value,
        "is_completed": status == RewardStatus.COMPLETED.value,
        "is_failed": status == RewardStatus.FAILED.value,
        "is_cancelled": status == RewardStatus.CANCELLED.value,
        "is_blockchain_pending": chain == BlockchainStatus.NOT_SENT.value,
        "is_blockchain_sent": chain == BlockchainStatus.SENT.value,
        "is_blockchain_confirmed": chain == BlockchainStatus.CONFIRMED.value,
        "is_blockchain_failed": chain == BlockchainStatus.FAILED.value,
        "can_retry": can_retry(chain, retries),
        "can_be_cancelled": can_be_cancelled(status, chain),
        "can_be_retried": can_be_retried(status, chain, retries),
        "formatted_amount": format_amount(reward.amount),
        "formatted_miles": format_miles(reward.miles_driven),
        "formatted_carbon_saved": format_carbon_grams(reward.carbon_saved),
        "carbon_saved_kg": carbon_kg(reward.carbon_saved),
        "formatted_carbon_saved_kg": format_carbon_kg(reward.carbon_saved),
        "reward_per_mile": reward_per_mile(reward.amount, reward.miles_driven),
        "formatted_reward_per_mile": format_reward_per_mile(reward.amount, reward.miles_driven),
        "carbon_efficiency": carbon_efficiency(reward.amount, reward.carbon_saved),
        "formatted_carbon_efficiency": format_carbon_efficiency(reward.amount, reward.carbon_saved),
        "processing_time_ms": processing_ms,
        "confirmation_time_ms": confirmation_ms,
        "total_processing_time_ms": total_ms,
        "formatted_processing_time": format_duration(processing_ms),
        "formatted_confirmation_time": format_duration(confirmation_ms),
        "formatted_total_processing_time": format_duration(total_ms),
    }
