"""
Reward creation and the reward operations exposed to the rest of the system.

Upload rewards are sized by a fixed formula from miles and carbon grams;
badge and challenge rewards carry a caller-chosen amount. Every reward
starts Pending/NotSent and is picked up by the distribution sweep.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..core.errors import NotFoundError, RewardStateError, ValidationError
from ..core.states import BlockchainStatus, HistoryEventType, RewardStatus, RewardType
from ..core.pagination import page_offset
from ..models.reward import Reward
from .audit import AuditSink
from .reward_state import MAX_RETRIES, amount_str, can_be_cancelled, can_be_retried, next_state, quantize_amount


logger = logging.getLogger("rewards")

MILE_RATE = Decimal("0.01")
CARBON_KG_RATE = Decimal("0.001")


def compute_upload_reward_amount(miles, carbon_grams) -> Decimal:
    """amount = miles * 0.01 + (carbon_grams / 1000) * 0.001, half-up to 8 places."""
    miles_d = Decimal(str(miles or 0))
    grams_d = Decimal(str(carbon_grams or 0))
    return quantize_amount(miles_d * MILE_RATE + (grams_d / Decimal(1000)) * CARBON_KG_RATE)


def build_upload_reward(
    *,
    user_id: str,
    upload_id: str,
    miles,
    carbon_grams,
    image_hash: str,
    vehicle_id: Optional[str] = None,
    vehicle_name: Optional[str] = None,
    previous_mileage: Optional[int] = None,
    ocr_confidence: Optional[float] = None,
    processing_time_ms: Optional[int] = None,
) -> Reward:
    miles_d = Decimal(str(miles or 0))
    grams_d = Decimal(str(carbon_grams or 0))
    description = f"Reward for uploading {float(miles_d):.1f} miles"
    if vehicle_name:
        description += f" for {vehicle_name}"
    return Reward(
        user_id=user_id,
        type=RewardType.UPLOAD.value,
        upload_id=upload_id,
        status=RewardStatus.PENDING.value,
        blockchain_status=BlockchainStatus.NOT_SENT.value,
        amount=compute_upload_reward_amount(miles_d, grams_d),
        miles_driven=miles_d,
        carbon_saved=grams_d,
        description=description,
        proof_data={
            "proof_types": ["image"],
            "proof_values": [image_hash],
            "impact_codes": ["carbon"],
            "impact_values": [float(grams_d)],
            "image_hash": image_hash,
            "upload_id": upload_id,
            "vehicle_id": vehicle_id,
            "previous_mileage": previous_mileage,
            "mileage_difference": float(miles_d),
            "ocr_confidence": ocr_confidence,
            "processing_time_ms": processing_time_ms,
        },
        extra={"source": "upload", "trigger": "odometer_photo", "vehicle_name": vehicle_name},
        retry_count=0,
    )


def _record_created(audit: Optional[AuditSink], reward: Reward) -> None:
    if audit is None:
        return
    audit.record(
        HistoryEventType.REWARD_CREATED.value,
        reward.user_id,
        {"type": reward.type, "amount": amount_str(reward.amount), "upload_id": reward.upload_id},
        reward_id=reward.id,
    )


def create_upload_reward(db: Session, *, audit: Optional[AuditSink] = None, **fields) -> Reward:
    reward = build_upload_reward(**fields)
    db.add(reward)
    db.commit()
    db.refresh(reward)
    logger.info("Upload reward created reward_id=%s user_id=%s amount=%s", reward.id, reward.user_id, amount_str(reward.amount))
    _record_created(audit, reward)
    return reward


def _create_achievement_reward(
    db: Session,
    *,
    user_id: str,
    reward_type: RewardType,
    ref_id: str,
    description: str,
    amount,
    audit: Optional[AuditSink],
) -> Reward:
    value = quantize_amount(amount)
    if value <= 0:
        raise ValidationError("Reward amount must be positive", context={"amount": str(amount)})
    proof_key = f"{reward_type.value}_id"
    reward = Reward(
        user_id=user_id,
        type=reward_type.value,
        status=RewardStatus.PENDING.value,
        blockchain_status=BlockchainStatus.NOT_SENT.value,
        amount=value,
        miles_driven=Decimal("0"),
        carbon_saved=Decimal("0"),
        description=description,
        proof_data={
            "proof_types": [reward_type.value],
            "proof_values": [ref_id],
            "impact_codes": ["achievement"],
            "impact_values": [1],
            proof_key: ref_id,
        },
        extra={"source": reward_type.value, "trigger": "automatic"},
        retry_count=0,
    )
    db.add(reward)
    db.commit()
    db.refresh(reward)
    logger.info("%s reward created reward_id=%s user_id=%s amount=%s", reward_type.value, reward.id, user_id, amount_str(value))
    _record_created(audit, reward)
    return reward


def create_badge_reward(db: Session, user_id: str, badge_id: str, badge_name: str, amount, *, audit: Optional[AuditSink] = None) -> Reward:
    return _create_achievement_reward(
        db,
        user_id=user_id,
        reward_type=RewardType.BADGE,
        ref_id=badge_id,
        description=f'Reward for earning "{badge_name}" badge',
        amount=amount,
        audit=audit,
    )


def create_challenge_reward(
    db: Session, user_id: str, challenge_id: str, challenge_name: str, amount, *, audit: Optional[AuditSink] = None
) -> Reward:
    return _create_achievement_reward(
        db,
        user_id=user_id,
        reward_type=RewardType.CHALLENGE,
        ref_id=challenge_id,
        description=f'Reward for completing "{challenge_name}" challenge',
        amount=amount,
        audit=audit,
    )


def get_reward(db: Session, reward_id: str, user_id: Optional[str] = None) -> Reward:
    query = db.query(Reward).filter(Reward.id == reward_id)
    if user_id:
        query = query.filter(Reward.user_id == user_id)
    reward = query.first()
    if reward is None:
        raise NotFoundError("Reward not found", context={"reward_id": reward_id})
    return reward


def get_user_rewards(
    db: Session,
    user_id: str,
    *,
    reward_type: Optional[str] = None,
    status: Optional[str] = None,
    blockchain_status: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Reward], int]:
    query = db.query(Reward).filter(Reward.user_id == user_id)
    if reward_type:
        query = query.filter(Reward.type == reward_type)
    if status:
        query = query.filter(Reward.status == status)
    if blockchain_status:
        query = query.filter(Reward.blockchain_status == blockchain_status)
    if date_from:
        query = query.filter(Reward.created_at >= date_from)
    if date_to:
        query = query.filter(Reward.created_at <= date_to)
    total = query.count()
    items = (
        query.order_by(Reward.created_at.desc(), Reward.id.desc())
        .offset(page_offset(page, page_size))
        .limit(page_size)
        .all()
    )
    return items, total


def get_reward_stats(db: Session, user_id: Optional[str] = None) -> dict:
    def _scoped(query):
        return query.filter(Reward.user_id == user_id) if user_id else query

    total, total_amount, total_miles, total_grams = _scoped(
        db.query(
            func.count(Reward.id),
            func.coalesce(func.sum(Reward.amount), 0),
            func.coalesce(func.sum(Reward.miles_driven), 0),
            func.coalesce(func.sum(Reward.carbon_saved), 0),
        )
    ).one()
    total = int(total or 0)
    total_amount = Decimal(str(total_amount or 0))

    def _grouped(column) -> dict[str, int]:
        rows = _scoped(db.query(column, func.count(Reward.id))).group_by(column).all()
        return {key: int(count) for key, count in rows}

    day = func.date(Reward.created_at)
    busiest = _scoped(db.query(day, func.count(Reward.id))).group_by(day).order_by(func.count(Reward.id).desc()).first()

    return {
        "total": total,
        "total_amount": amount_str(total_amount),
        "total_miles": float(total_miles or 0),
        "total_carbon_saved_kg": float(total_grams or 0) / 1000,
        "by_type": _grouped(Reward.type),
        "by_status": _grouped(Reward.status),
        "by_blockchain_status": _grouped(Reward.blockchain_status),
        "average_amount": amount_str(total_amount / total) if total else amount_str(0),
        "average_miles": float(total_miles or 0) / total if total else 0.0,
        "average_carbon_saved_kg": float(total_grams or 0) / 1000 / total if total else 0.0,
        "most_active_day": str(busiest[0]) if busiest else None,
        "most_active_day_count": int(busiest[1]) if busiest else 0,
    }


def retry_reward(db: Session, reward_id: str, *, user_id: Optional[str] = None, audit: Optional[AuditSink] = None) -> Reward:
    """Queue a failed reward for another distribution attempt with its original proof data."""
    reward = get_reward(db, reward_id, user_id)
    if not can_be_retried(reward.status, reward.blockchain_status, reward.retry_count):
        raise RewardStateError(
            "Reward cannot be retried",
            context={"reward_id": reward_id, "status": reward.status, "retry_count": reward.retry_count},
        )
    status, chain = next_state(reward.status, reward.blockchain_status, "retry")
    now = datetime.utcnow()
    result = db.execute(
        update(Reward)
        .where(
            Reward.id == reward_id,
            Reward.status == RewardStatus.FAILED.value,
            Reward.blockchain_status == BlockchainStatus.FAILED.value,
            Reward.retry_count < MAX_RETRIES,
        )
        .values(
            status=status,
            blockchain_status=chain,
            tx_ref=None,
            failed_at=None,
            failure_reason=None,
            last_retry_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise RewardStateError("Reward changed state before it could be retried", context={"reward_id": reward_id})
    db.commit()
    db.refresh(reward)
    logger.info("Reward queued for retry reward_id=%s attempt=%s", reward_id, (reward.retry_count or 0) + 1)
    if audit is not None:
        audit.record(
            HistoryEventType.REWARD_RETRIED.value,
            reward.user_id,
            {"amount": amount_str(reward.amount), "retry_count": reward.retry_count},
            reward_id=reward.id,
        )
    return reward


def cancel_reward(db: Session, reward_id: str, *, user_id: Optional[str] = None, audit: Optional[AuditSink] = None) -> Reward:
    reward = get_reward(db, reward_id, user_id)
    if not can_be_cancelled(reward.status, reward.blockchain_status):
        raise RewardStateError(
            "Reward cannot be cancelled",
            context={"reward_id": reward_id, "status": reward.status, "blockchain_status": reward.blockchain_status},
        )
    status, chain = next_state(reward.status, reward.blockchain_status, "cancel")
    result = db.execute(
        update(Reward)
        .where(
            Reward.id == reward_id,
            Reward.status == RewardStatus.PENDING.value,
            Reward.blockchain_status == BlockchainStatus.NOT_SENT.value,
        )
        .values(status=status, blockchain_status=chain, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise RewardStateError("Reward was claimed for distribution before it could be cancelled", context={"reward_id": reward_id})
    db.commit()
    db.refresh(reward)
    logger.info("Reward cancelled reward_id=%s", reward_id)
    if audit is not None:
        audit.record(HistoryEventType.REWARD_CANCELLED.value, reward.user_id, {"amount": amount_str(reward.amount)}, reward_id=reward.id)
    return reward
