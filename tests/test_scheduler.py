import threading
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mileage_rewards.models import Base
from mileage_rewards.models.reward import Reward
from mileage_rewards.models.user import User
from mileage_rewards.services.audit import LogAuditSink
from mileage_rewards.services.ledger import LedgerClient, LedgerSubmission, TransactionStatus
from mileage_rewards.services.scheduler import Runtime, UploadWorkerPool, run_distribution_scheduler
from mileage_rewards.worker import run_cycle


def _make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


class ConfirmingLedger(LedgerClient):
    name = "confirming"

    def submit_batch(self, entries):
        return LedgerSubmission(tx_ref="0xtx", total_distributed="1", batch_count=len(entries), user_count=1)

    def get_transaction_status(self, tx_ref):
        return TransactionStatus(confirmed=True, reverted=False, block_number=1)


class RecoveryPipeline:
    def __init__(self):
        self.calls = 0

    def recover_stuck_uploads(self, older_than_sec=None):
        self.calls += 1
        return []


def test_worker_cycle_distributes_then_confirms():
    factory = _make_session_factory()
    with factory() as db:
        user = User(email="a@example.com", wallet_address="0xabc", token_balance=Decimal("0"))
        db.add(user)
        db.commit()
        db.add(
            Reward(
                user_id=user.id,
                type="badge",
                status="pending",
                blockchain_status="not_sent",
                amount=Decimal("3"),
                retry_count=0,
            )
        )
        db.commit()
        user_id = user.id

    pipeline = RecoveryPipeline()
    runtime = Runtime(pipeline=pipeline, ledger=ConfirmingLedger(), audit=LogAuditSink(), pool=None, session_factory=factory)
    last = run_cycle(runtime, now=10_000.0, last_recovery=0.0)

    assert last == 10_000.0
    assert pipeline.calls == 1
    with factory() as db:
        reward = db.query(Reward).one()
        assert (reward.status, reward.blockchain_status) == ("completed", "confirmed")
        assert db.get(User, user_id).token_balance == Decimal("3")

    assert run_cycle(runtime, now=10_001.0, last_recovery=last) == last
    assert pipeline.calls == 1


def test_distribution_loop_survives_cycle_failure():
    stop = threading.Event()
    calls = []

    def _broken_factory():
        calls.append(1)
        stop.set()
        raise RuntimeError("db unavailable")

    run_distribution_scheduler(stop, ledger=ConfirmingLedger(), session_factory=_broken_factory, interval_sec=5)
    assert calls == [1]


def test_worker_pool_runs_tasks_and_logs_failures(caplog):
    pool = UploadWorkerPool(max_workers=2)
    try:
        ok = pool.submit(lambda x: x * 2, 21)
        bad = pool.submit(lambda: 1 / 0)
        assert ok.result(timeout=5) == 42
        bad.exception(timeout=5)
    finally:
        pool.shutdown()
    assert any("Upload worker task failed" in rec.getMessage() for rec in caplog.records)
