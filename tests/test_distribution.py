from datetime import datetime
from decimal import Decimal

import pytest
import requests
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mileage_rewards.core.errors import LedgerPollError, LedgerSubmissionError
from mileage_rewards.models import Base
from mileage_rewards.models.reward import Reward
from mileage_rewards.models.user import User
from mileage_rewards.services.distribution import build_batch_entry, sweep_pending
from mileage_rewards.services.ledger import BatchEntry, HttpLedgerClient, LedgerClient, LedgerSubmission


def _make_session():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    return SessionLocal()


class FakeLedger(LedgerClient):
    name = "fake"

    def __init__(self, fail_wallets=()):
        self.fail_wallets = set(fail_wallets)
        self.batches = []

    def submit_batch(self, entries):
        wallet = entries[0].wallet
        self.batches.append(entries)
        if wallet in self.fail_wallets:
            raise LedgerSubmissionError("insufficient gas")
        return LedgerSubmission(
            tx_ref=f"0xtx-{wallet}",
            total_distributed=str(sum(Decimal(e.amount) for e in entries)),
            batch_count=len(entries),
            user_count=1,
        )


def _user(db, wallet):
    user = User(email=f"{wallet or 'none'}@example.com", wallet_address=wallet)
    db.add(user)
    db.commit()
    return user


def _pending(db, user, amount="1.0"):
    reward = Reward(
        user_id=user.id,
        type="upload",
        status="pending",
        blockchain_status="not_sent",
        amount=Decimal(amount),
        miles_driven=Decimal("10"),
        carbon_saved=Decimal("2000"),
        proof_data={"proof_types": ["image"], "proof_values": ["hash"], "impact_codes": ["carbon"], "impact_values": [2000]},
        retry_count=0,
    )
    db.add(reward)
    db.commit()
    return reward


def test_rewards_grouped_per_wallet_and_marked_sent():
    db = _make_session()
    alice = _user(db, "0xalice")
    bob = _user(db, "0xbob")
    a1, a2 = _pending(db, alice), _pending(db, alice, "2.5")
    b1 = _pending(db, bob)
    ledger = FakeLedger()

    summary = sweep_pending(db, ledger=ledger)

    assert summary.claimed == 3
    assert summary.batches_sent == 2
    assert sorted(len(batch) for batch in ledger.batches) == [1, 2]
    for reward in (a1, a2, b1):
        db.refresh(reward)
        assert reward.status == "processing"
        assert reward.blockchain_status == "sent"
        assert reward.processed_at is not None
    assert a1.tx_ref == a2.tx_ref == "0xtx-0xalice"
    assert b1.tx_ref == "0xtx-0xbob"
    assert a2.blockchain_data["batch_count"] == 2


def test_failed_batch_marks_every_member_failed_without_touching_other_wallets():
    db = _make_session()
    alice = _user(db, "0xalice")
    bob = _user(db, "0xbob")
    a1, a2 = _pending(db, alice), _pending(db, alice)
    b1 = _pending(db, bob)

    summary = sweep_pending(db, ledger=FakeLedger(fail_wallets={"0xalice"}))

    assert summary.batches_failed == 1
    assert summary.batches_sent == 1
    for reward in (a1, a2):
        db.refresh(reward)
        assert (reward.status, reward.blockchain_status) == ("failed", "failed")
        assert reward.retry_count == 1
        assert "insufficient gas" in reward.failure_reason
        assert reward.tx_ref is None
    db.refresh(b1)
    assert (b1.status, b1.blockchain_status) == ("processing", "sent")


def test_reward_without_wallet_is_skipped(caplog):
    db = _make_session()
    ghost = _user(db, None)
    reward = _pending(db, ghost)
    ledger = FakeLedger()

    summary = sweep_pending(db, ledger=ledger)

    assert summary.skipped_no_wallet == 1
    assert ledger.batches == []
    db.refresh(reward)
    assert reward.status == "pending"
    assert any("no wallet address" in rec.message for rec in caplog.records)


def test_walletless_rewards_do_not_starve_other_users(caplog):
    db = _make_session()
    ghost = _user(db, None)
    blank = User(email="blank@example.com", wallet_address="")
    db.add(blank)
    db.commit()
    good = _user(db, "0xgood")
    stuck = [_pending(db, ghost), _pending(db, ghost), _pending(db, blank)]
    for i, reward in enumerate(stuck):
        reward.created_at = datetime(2020, 1, 1, 0, i)
    db.commit()
    ready = _pending(db, good)
    ledger = FakeLedger()

    summary = sweep_pending(db, ledger=ledger, batch_size=3)

    assert summary.skipped_no_wallet == 3
    assert summary.batches_sent == 1
    assert [e.wallet for e in ledger.batches[0]] == ["0xgood"]
    db.refresh(ready)
    assert (ready.status, ready.blockchain_status) == ("processing", "sent")
    for reward in stuck:
        db.refresh(reward)
        assert (reward.status, reward.blockchain_status) == ("pending", "not_sent")
    assert sum("no wallet address" in rec.getMessage() for rec in caplog.records) == 3


def test_second_sweep_does_not_resubmit_claimed_rewards():
    db = _make_session()
    alice = _user(db, "0xalice")
    _pending(db, alice)
    ledger = FakeLedger()
    sweep_pending(db, ledger=ledger)
    summary = sweep_pending(db, ledger=ledger)
    assert summary.selected == 0
    assert len(ledger.batches) == 1


def test_sweep_respects_batch_size_oldest_first():
    db = _make_session()
    alice = _user(db, "0xalice")
    for _ in range(3):
        _pending(db, alice)
    first = _pending(db, alice)
    first.created_at = datetime(2020, 1, 1)
    db.commit()
    summary = sweep_pending(db, ledger=FakeLedger(), batch_size=2)
    assert summary.claimed == 2
    db.refresh(first)
    assert first.status == "processing"


def test_batch_entry_payload_uses_reward_proof():
    db = _make_session()
    alice = _user(db, "0xalice")
    reward = _pending(db, alice, "1.5075005")
    entry = build_batch_entry(reward, "0xalice")
    payload = entry.as_payload()
    assert payload["wallet"] == "0xalice"
    assert payload["amount"] == "1.50750050"
    assert payload["proofTypes"] == ["image"]
    assert payload["impactValues"] == ["2000"]


class _Response:
    def __init__(self, status_code, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class _Session:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.calls.append(("POST", url, headers, json))
        if self.exc:
            raise self.exc
        return self.response

    def get(self, url, headers=None, timeout=None):
        self.calls.append(("GET", url, headers, None))
        if self.exc:
            raise self.exc
        return self.response


def _entry():
    return BatchEntry(
        wallet="0xalice",
        miles="10.00",
        amount="1.00000000",
        proof_types=["image"],
        proof_values=["hash"],
        impact_codes=["carbon"],
        impact_values=[2000],
    )


def test_http_ledger_submit_returns_tx_ref():
    session = _Session(_Response(200, {"txRef": "0xabc", "totalDistributed": "1.0", "batchCount": 1, "userCount": 1}))
    client = HttpLedgerClient("https://ledger.example.com/", token="secret", session=session)
    submission = client.submit_batch([_entry()])
    assert submission.tx_ref == "0xabc"
    method, url, headers, body = session.calls[0]
    assert url == "https://ledger.example.com/batches"
    assert headers["Authorization"] == "Bearer secret"
    assert body["entries"][0]["wallet"] == "0xalice"


@pytest.mark.parametrize(
    "session",
    [
        _Session(_Response(500, text="boom")),
        _Session(_Response(200, {"ok": True})),
        _Session(exc=requests.ConnectionError("refused")),
    ],
)
def test_http_ledger_submit_failures_raise(session):
    client = HttpLedgerClient("https://ledger.example.com", session=session)
    with pytest.raises(LedgerSubmissionError):
        client.submit_batch([_entry()])


def test_http_ledger_status_handling():
    confirmed = HttpLedgerClient(
        "https://ledger.example.com",
        session=_Session(_Response(200, {"confirmed": True, "reverted": False, "blockNumber": 12})),
    ).get_transaction_status("0xabc")
    assert confirmed.confirmed is True
    assert confirmed.block_number == 12

    unknown = HttpLedgerClient("https://ledger.example.com", session=_Session(_Response(404))).get_transaction_status("0xabc")
    assert unknown.confirmed is False
    assert unknown.reverted is False

    with pytest.raises(LedgerPollError):
        HttpLedgerClient("https://ledger.example.com", session=_Session(_Response(503, text="down"))).get_transaction_status("0xabc")
