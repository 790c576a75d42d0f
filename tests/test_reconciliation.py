import logging
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mileage_rewards.core.errors import LedgerPollError
from mileage_rewards.models import Base
from mileage_rewards.models.reward import Reward
from mileage_rewards.models.user import User
from mileage_rewards.services.ledger import LedgerClient, TransactionStatus
from mileage_rewards.services.reconciliation import confirm_reward, sweep_sent


def _make_session():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    return SessionLocal()


class StatusLedger(LedgerClient):
    name = "status"

    def __init__(self, statuses):
        self.statuses = statuses
        self.polls = []

    def get_transaction_status(self, tx_ref):
        self.polls.append(tx_ref)
        status = self.statuses[tx_ref]
        if isinstance(status, Exception):
            raise status
        return status


def _user(db, wallet="0xalice"):
    user = User(email=f"{wallet}@example.com", wallet_address=wallet, token_balance=Decimal("0"))
    db.add(user)
    db.commit()
    return user


def _sent(db, user, tx_ref="0xtx1", amount="1.5"):
    reward = Reward(
        user_id=user.id,
        type="upload",
        status="processing",
        blockchain_status="sent",
        amount=Decimal(amount),
        miles_driven=Decimal("10"),
        carbon_saved=Decimal("2000"),
        tx_ref=tx_ref,
        blockchain_data={"tx_ref": tx_ref},
        retry_count=0,
    )
    db.add(reward)
    db.commit()
    return reward


def test_confirmed_transaction_settles_and_credits_balance():
    db = _make_session()
    user = _user(db)
    r1 = _sent(db, user, amount="1.5")
    r2 = _sent(db, user, amount="0.25")
    ledger = StatusLedger({"0xtx1": TransactionStatus(confirmed=True, reverted=False, block_number=77, gas_used=21000)})

    summary = sweep_sent(db, ledger=ledger)

    assert summary.confirmed == 2
    # One poll per transaction reference per sweep.
    assert ledger.polls == ["0xtx1"]
    for reward in (r1, r2):
        db.refresh(reward)
        assert (reward.status, reward.blockchain_status) == ("completed", "confirmed")
        assert reward.confirmed_at is not None
        assert reward.blockchain_data["block_number"] == 77
    db.refresh(user)
    assert user.token_balance == Decimal("1.75")


def test_confirmation_is_idempotent():
    db = _make_session()
    user = _user(db)
    reward = _sent(db, user, amount="2")
    status = TransactionStatus(confirmed=True, reverted=False, block_number=5)

    assert confirm_reward(db, reward.id, "0xtx1", status) is True
    assert confirm_reward(db, reward.id, "0xtx1", status) is False
    summary = sweep_sent(db, ledger=StatusLedger({"0xtx1": status}))
    assert summary.polled == 0

    db.refresh(user)
    assert user.token_balance == Decimal("2")


def test_confirm_requires_matching_tx_ref():
    db = _make_session()
    user = _user(db)
    reward = _sent(db, user, tx_ref="0xreal")
    assert confirm_reward(db, reward.id, "0xother", TransactionStatus(confirmed=True, reverted=False)) is False
    db.refresh(reward)
    assert reward.blockchain_status == "sent"


def test_reverted_transaction_fails_reward_without_credit():
    db = _make_session()
    user = _user(db)
    reward = _sent(db, user)
    summary = sweep_sent(db, ledger=StatusLedger({"0xtx1": TransactionStatus(confirmed=False, reverted=True, block_number=9)}))
    assert summary.reverted == 1
    db.refresh(reward)
    assert (reward.status, reward.blockchain_status) == ("failed", "failed")
    assert reward.retry_count == 1
    assert "reverted" in reward.failure_reason
    db.refresh(user)
    assert user.token_balance == Decimal("0")


def test_unfinalised_transaction_stays_sent_and_is_touched():
    db = _make_session()
    user = _user(db)
    reward = _sent(db, user)
    summary = sweep_sent(db, ledger=StatusLedger({"0xtx1": TransactionStatus(confirmed=False, reverted=False)}))
    assert summary.pending == 1
    db.refresh(reward)
    assert reward.blockchain_status == "sent"
    assert reward.last_checked_at is not None


def test_poll_error_changes_nothing():
    db = _make_session()
    user = _user(db)
    failing = _sent(db, user, tx_ref="0xbad")
    ok = _sent(db, user, tx_ref="0xgood")
    ledger = StatusLedger(
        {
            "0xbad": LedgerPollError("rpc timeout"),
            "0xgood": TransactionStatus(confirmed=True, reverted=False),
        }
    )
    summary = sweep_sent(db, ledger=ledger)
    assert summary.poll_errors == 1
    assert summary.confirmed == 1
    db.refresh(failing)
    assert (failing.status, failing.blockchain_status) == ("processing", "sent")
    db.refresh(ok)
    assert ok.blockchain_status == "confirmed"


def test_sent_reward_without_tx_ref_is_reported(caplog):
    db = _make_session()
    user = _user(db)
    orphan = _sent(db, user, tx_ref=None)
    caplog.set_level(logging.ERROR)
    ledger = StatusLedger({})
    summary = sweep_sent(db, ledger=ledger)
    assert summary.orphaned == 1
    assert ledger.polls == []
    assert any(orphan.id in rec.getMessage() for rec in caplog.records)
