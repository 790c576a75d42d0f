"""
Confirmation sweep: poll the ledger for submitted rewards and settle them.

Confirmation is the only place a user's token balance grows. The reward
transition is a guarded UPDATE keyed on the recorded transaction reference,
and the balance increment rides in the same transaction only when that
UPDATE matched, so re-observing a confirmed transaction never credits twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..core.db import is_postgres
from ..core.errors import DataIntegrityError, LedgerPollError, log_exception
from ..core.states import BlockchainStatus, HistoryEventType, RewardStatus
from ..models.reward import Reward
from ..models.user import User
from .audit import AuditSink
from .ledger import LedgerClient, TransactionStatus
from .reward_state import amount_str, next_state


logger = logging.getLogger("reconciliation")


@dataclass
class ReconcileSummary:
    polled: int = 0
    confirmed: int = 0
    reverted: int = 0
    pending: int = 0
    poll_errors: int = 0
    orphaned: int = 0


def _select_sent(db: Session, batch_size: int) -> list[Reward]:
    query = (
        db.query(Reward)
        .filter(
            Reward.blockchain_status == BlockchainStatus.SENT.value,
            Reward.tx_ref.is_not(None),
        )
        .order_by(Reward.last_checked_at.asc().nulls_first(), Reward.created_at.asc())
        .limit(batch_size)
    )
    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)
    return query.all()


def report_orphaned(db: Session) -> int:
    """Log Sent rewards that never got a transaction reference recorded."""
    orphans = (
        db.query(Reward.id, Reward.user_id, Reward.processed_at)
        .filter(Reward.blockchain_status == BlockchainStatus.SENT.value, Reward.tx_ref.is_(None))
        .all()
    )
    for reward_id, user_id, processed_at in orphans:
        err = DataIntegrityError("Submitted reward has no transaction reference", context={"reward_id": reward_id})
        logger.error("%s reward_id=%s user_id=%s claimed_at=%s", err.message, reward_id, user_id, processed_at)
    return len(orphans)


def confirm_reward(db: Session, reward_id: str, tx_ref: str, status: TransactionStatus) -> bool:
    """Settle one reward as confirmed and credit its owner. Returns False if it was already settled."""
    new_status, new_chain = next_state(RewardStatus.PROCESSING.value, BlockchainStatus.SENT.value, "confirm")
    now = datetime.now(timezone.utc)
    reward = db.query(Reward).filter(Reward.id == reward_id).first()
    if reward is None:
        return False
    receipt = {
        **(reward.blockchain_data or {}),
        "tx_ref": tx_ref,
        "block_number": status.block_number,
        "gas_used": status.gas_used,
        "confirmed_at": now.isoformat(),
    }
    try:
        result = db.execute(
            update(Reward)
            .where(
                Reward.id == reward_id,
                Reward.blockchain_status == BlockchainStatus.SENT.value,
                Reward.tx_ref == tx_ref,
            )
            .values(
                status=new_status,
                blockchain_status=new_chain,
                confirmed_at=now,
                last_checked_at=now,
                blockchain_data=receipt,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return False
        db.execute(
            update(User)
            .where(User.id == reward.user_id)
            .values(token_balance=User.token_balance + reward.amount)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True


def _fail_reverted(db: Session, reward_id: str, tx_ref: str, status: TransactionStatus) -> bool:
    new_status, new_chain = next_state(RewardStatus.PROCESSING.value, BlockchainStatus.SENT.value, "revert")
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(Reward)
        .where(
            Reward.id == reward_id,
            Reward.blockchain_status == BlockchainStatus.SENT.value,
            Reward.tx_ref == tx_ref,
        )
        .values(
            status=new_status,
            blockchain_status=new_chain,
            retry_count=Reward.retry_count + 1,
            failure_reason=f"Transaction {tx_ref} reverted on-chain (block {status.block_number})",
            failed_at=now,
            last_checked_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return False
    db.commit()
    return True


def _touch(db: Session, reward_id: str) -> None:
    now = datetime.now(timezone.utc)
    db.execute(
        update(Reward)
        .where(Reward.id == reward_id, Reward.blockchain_status == BlockchainStatus.SENT.value)
        .values(last_checked_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def sweep_sent(
    db: Session,
    *,
    ledger: LedgerClient,
    audit: Optional[AuditSink] = None,
    batch_size: int = 50,
) -> ReconcileSummary:
    summary = ReconcileSummary()
    summary.orphaned = report_orphaned(db)

    rows = [(r.id, r.user_id, r.tx_ref, r.amount) for r in _select_sent(db, batch_size)]
    # Release any row locks before polling the network.
    db.commit()

    status_cache: dict[str, TransactionStatus] = {}
    for reward_id, user_id, tx_ref, amount in rows:
        summary.polled += 1
        try:
            status = status_cache.get(tx_ref)
            if status is None:
                status = ledger.get_transaction_status(tx_ref)
                status_cache[tx_ref] = status
        except Exception as exc:
            summary.poll_errors += 1
            err = exc if isinstance(exc, LedgerPollError) else LedgerPollError(str(exc))
            logger.warning("Ledger poll failed reward_id=%s tx_ref=%s err=%s", reward_id, tx_ref, err.message)
            continue

        try:
            if status.reverted:
                if _fail_reverted(db, reward_id, tx_ref, status):
                    summary.reverted += 1
                    logger.warning("Reward reverted reward_id=%s tx_ref=%s", reward_id, tx_ref)
                    if audit is not None:
                        audit.record(
                            HistoryEventType.REWARD_FAILED.value,
                            user_id,
                            {"tx_ref": tx_ref, "amount": amount_str(amount), "reason": "reverted"},
                            reward_id=reward_id,
                        )
            elif status.confirmed:
                if confirm_reward(db, reward_id, tx_ref, status):
                    summary.confirmed += 1
                    logger.info("Reward confirmed reward_id=%s tx_ref=%s amount=%s", reward_id, tx_ref, amount_str(amount))
                    if audit is not None:
                        audit.record(
                            HistoryEventType.REWARD_CONFIRMED.value,
                            user_id,
                            {"tx_ref": tx_ref, "amount": amount_str(amount), "block_number": status.block_number},
                            reward_id=reward_id,
                        )
            else:
                _touch(db, reward_id)
                summary.pending += 1
        except Exception as exc:
            db.rollback()
            log_exception(logger, "Failed to settle reward", extra={"reward_id": reward_id, "tx_ref": tx_ref}, exc=exc)

    if summary.polled or summary.orphaned:
        logger.info(
            "Reconcile sweep polled=%s confirmed=%s reverted=%s pending=%s poll_errors=%s orphaned=%s",
            summary.polled,
            summary.confirmed,
            summary.reverted,
            summary.pending,
            summary.poll_errors,
            summary.orphaned,
        )
    return summary
