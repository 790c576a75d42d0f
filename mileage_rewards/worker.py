"""
Reward worker process entrypoint.

Runs the distribution sweep, the confirmation sweep and stuck-upload
recovery in one polling loop, for deployments that keep the API process
free of background work (``ENABLE_SWEEPS=false``).
"""

from __future__ import annotations

import logging
import time

from .core.config import settings, validate_runtime_settings
from .services.distribution import sweep_pending
from .services.reconciliation import sweep_sent
from .services.scheduler import Runtime, build_runtime

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("worker")


def run_cycle(runtime: Runtime, *, now: float, last_recovery: float) -> float:
    """Run one pass of every sweep; returns the time recovery last ran."""
    try:
        with runtime.session_factory() as db:
            sweep_pending(db, ledger=runtime.ledger, audit=runtime.audit, batch_size=settings.distribution_batch_size)
    except Exception as exc:
        logger.exception("Distribution sweep failed: %s", exc)
    try:
        with runtime.session_factory() as db:
            sweep_sent(db, ledger=runtime.ledger, audit=runtime.audit, batch_size=settings.reconcile_batch_size)
    except Exception as exc:
        logger.exception("Reconcile sweep failed: %s", exc)
    if now - last_recovery >= settings.recovery_interval_sec:
        try:
            runtime.pipeline.recover_stuck_uploads()
        except Exception as exc:
            logger.exception("Upload recovery failed: %s", exc)
        return now
    return last_recovery


def main() -> int:
    validate_runtime_settings()
    runtime = build_runtime()
    interval = max(5, min(settings.distribution_interval_sec, settings.reconcile_interval_sec))
    logger.info("Reward worker started (interval=%ss)", interval)
    last_recovery = 0.0
    try:
        while True:
            last_recovery = run_cycle(runtime, now=time.monotonic(), last_recovery=last_recovery)
            time.sleep(interval)
    except KeyboardInterrupt:
        logger.info("Reward worker stopped")
        return 0
    finally:
        if runtime.pool is not None:
            runtime.pool.shutdown(wait=True)


if __name__ == "__main__":
    raise SystemExit(main())
