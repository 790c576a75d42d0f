"""
Distribution sweep: submit pending rewards to the ledger, one batch per wallet.

Rewards are claimed into Processing/Sent and committed before anything is
submitted, so an overlapping or restarted sweep never picks them up again.
A ledger failure fails every reward of that batch together and leaves other
users' batches untouched.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, not_, update
from sqlalchemy.orm import Session

from ..core.db import is_postgres
from ..core.errors import DataIntegrityError, log_exception
from ..core.states import BlockchainStatus, HistoryEventType, RewardStatus
from ..models.reward import Reward
from ..models.user import User
from .audit import AuditSink
from .ledger import BatchEntry, LedgerClient
from .reward_state import amount_str, next_state


logger = logging.getLogger("distribution")


@dataclass
class DistributionSummary:
    selected: int = 0
    claimed: int = 0
    batches_sent: int = 0
    batches_failed: int = 0
    rewards_sent: int = 0
    rewards_failed: int = 0
    skipped_no_wallet: int = 0
    tx_refs: list[str] = field(default_factory=list)


def _has_wallet():
    return and_(User.wallet_address.is_not(None), User.wallet_address != "")


def _select_pending(db: Session, batch_size: int) -> list[tuple[Reward, str]]:
    # Walletless rewards are excluded here so they can never crowd out others.
    query = (
        db.query(Reward, User.wallet_address)
        .join(User, User.id == Reward.user_id)
        .filter(
            Reward.status == RewardStatus.PENDING.value,
            Reward.blockchain_status == BlockchainStatus.NOT_SENT.value,
            _has_wallet(),
        )
        .order_by(Reward.created_at.asc(), Reward.id.asc())
        .limit(batch_size)
    )
    if is_postgres(db):
        query = query.with_for_update(of=Reward, skip_locked=True)
    return query.all()


def report_missing_wallets(db: Session, limit: int = 100) -> int:
    """Log pending rewards whose owner has no wallet address. They stay Pending until the data is fixed."""
    rows = (
        db.query(Reward.id, Reward.user_id)
        .join(User, User.id == Reward.user_id)
        .filter(
            Reward.status == RewardStatus.PENDING.value,
            Reward.blockchain_status == BlockchainStatus.NOT_SENT.value,
            not_(_has_wallet()),
        )
        .order_by(Reward.created_at.asc(), Reward.id.asc())
        .limit(limit)
        .all()
    )
    for reward_id, user_id in rows:
        err = DataIntegrityError("Reward owner has no wallet address", context={"reward_id": reward_id, "user_id": user_id})
        logger.error("%s reward_id=%s user_id=%s", err.message, reward_id, user_id)
    return len(rows)


def _claim(db: Session, rewards: list[Reward], now: datetime) -> list[Reward]:
    status, chain = next_state(RewardStatus.PENDING.value, BlockchainStatus.NOT_SENT.value, "claim")
    claimed: list[Reward] = []
    for reward in rewards:
        result = db.execute(
            update(Reward)
            .where(
                Reward.id == reward.id,
                Reward.status == RewardStatus.PENDING.value,
                Reward.blockchain_status == BlockchainStatus.NOT_SENT.value,
            )
            .values(status=status, blockchain_status=chain, processed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(reward)
    return claimed


def build_batch_entry(reward: Reward, wallet: str) -> BatchEntry:
    proof = reward.proof_data or {}
    return BatchEntry(
        wallet=wallet,
        miles=f"{float(reward.miles_driven or 0):.2f}",
        amount=amount_str(reward.amount),
        proof_types=proof.get("proof_types") or ["image"],
        proof_values=proof.get("proof_values") or [proof.get("image_hash") or ""],
        impact_codes=proof.get("impact_codes") or ["carbon"],
        impact_values=proof.get("impact_values") or [float(reward.carbon_saved or 0)],
        description=reward.description or "",
    )


def _record(audit: Optional[AuditSink], event: HistoryEventType, rewards: list[Reward], payload: dict) -> None:
    if audit is None:
        return
    for reward in rewards:
        audit.record(event.value, reward.user_id, {**payload, "amount": amount_str(reward.amount)}, reward_id=reward.id)


def _submit_group(
    db: Session,
    wallet: str,
    rewards: list[Reward],
    *,
    ledger: LedgerClient,
    audit: Optional[AuditSink],
    summary: DistributionSummary,
) -> None:
    ids = [r.id for r in rewards]
    entries = [build_batch_entry(r, wallet) for r in rewards]
    try:
        submission = ledger.submit_batch(entries)
    except Exception as exc:
        failed_at = datetime.now(timezone.utc)
        status, chain = next_state(RewardStatus.PROCESSING.value, BlockchainStatus.SENT.value, "submit_failed")
        logger.warning("Ledger batch failed wallet=%s rewards=%s err=%s", wallet, len(ids), exc)
        try:
            db.execute(
                update(Reward)
                .where(Reward.id.in_(ids))
                .values(
                    status=status,
                    blockchain_status=chain,
                    retry_count=Reward.retry_count + 1,
                    failure_reason=str(exc)[:2000],
                    failed_at=failed_at,
                    updated_at=failed_at,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception as persist_exc:
            db.rollback()
            log_exception(logger, "Failed to record batch failure", extra={"wallet": wallet}, exc=persist_exc)
            return
        summary.batches_failed += 1
        summary.rewards_failed += len(ids)
        _record(audit, HistoryEventType.REWARD_FAILED, rewards, {"reason": str(exc)})
        return

    sent_at = datetime.now(timezone.utc)
    blockchain_data = {
        "tx_ref": submission.tx_ref,
        "total_distributed": submission.total_distributed,
        "batch_count": submission.batch_count,
        "user_count": submission.user_count,
        "submitted_at": sent_at.isoformat(),
    }
    try:
        for reward in rewards:
            db.execute(
                update(Reward)
                .where(Reward.id == reward.id)
                .values(
                    tx_ref=submission.tx_ref,
                    blockchain_data={**(reward.blockchain_data or {}), **blockchain_data},
                    updated_at=sent_at,
                )
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except Exception as exc:
        db.rollback()
        # Rewards stay Sent without a tx_ref; the reconciler reports them.
        log_exception(logger, "Failed to persist ledger submission", extra={"wallet": wallet, "tx_ref": submission.tx_ref}, exc=exc)
        return
    summary.batches_sent += 1
    summary.rewards_sent += len(ids)
    summary.tx_refs.append(submission.tx_ref)
    logger.info(
        "Batch distributed wallet=%s rewards=%s total=%s tx_ref=%s",
        wallet,
        len(ids),
        submission.total_distributed,
        submission.tx_ref,
    )
    _record(audit, HistoryEventType.REWARD_DISTRIBUTED, rewards, {"tx_ref": submission.tx_ref})


def sweep_pending(
    db: Session,
    *,
    ledger: LedgerClient,
    audit: Optional[AuditSink] = None,
    batch_size: int = 100,
) -> DistributionSummary:
    summary = DistributionSummary()
    summary.skipped_no_wallet = report_missing_wallets(db, limit=batch_size)
    rows = _select_pending(db, batch_size)
    summary.selected = len(rows)
    if not rows:
        return summary

    groups: "OrderedDict[str, list[Reward]]" = OrderedDict()
    for reward, wallet in rows:
        groups.setdefault(wallet, []).append(reward)

    now = datetime.now(timezone.utc)
    try:
        claimed_groups: "OrderedDict[str, list[Reward]]" = OrderedDict()
        for wallet, rewards in groups.items():
            claimed = _claim(db, rewards, now)
            if claimed:
                claimed_groups[wallet] = claimed
        db.commit()
    except Exception as exc:
        db.rollback()
        log_exception(logger, "Failed to claim pending rewards", exc=exc)
        return summary

    summary.claimed = sum(len(r) for r in claimed_groups.values())
    for wallet, rewards in claimed_groups.items():
        _record(audit, HistoryEventType.REWARD_PROCESSING, rewards, {"wallet": wallet})
        _submit_group(db, wallet, rewards, ledger=ledger, audit=audit, summary=summary)

    logger.info(
        "Distribution sweep selected=%s claimed=%s batches_sent=%s batches_failed=%s skipped_no_wallet=%s",
        summary.selected,
        summary.claimed,
        summary.batches_sent,
        summary.batches_failed,
        summary.skipped_no_wallet,
    )
    return summary
