"""
Background execution: the bounded upload worker pool and the periodic sweeps.

Each sweep runs in its own thread, opens a fresh session per cycle and
waits on a stop event between cycles. The sweeps share nothing in memory;
they coordinate only through reward and upload status columns.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.db import SessionLocal
from .audit import AuditSink, build_audit_sink
from .cache import build_cache
from .distribution import sweep_pending
from .ledger import LedgerClient, build_ledger_client
from .ocr import OcrExtractor, build_ocr_provider
from .reconciliation import sweep_sent
from .storage import get_storage_provider
from .upload_pipeline import UploadPipeline
from .vision import VisionValidator, build_vision_provider


logger = logging.getLogger("scheduler")


class UploadWorkerPool:
    """Caps how many uploads talk to OCR and vision providers at once."""

    def __init__(self, max_workers: int | None = None):
        self.max_workers = max(1, int(max_workers or settings.upload_workers))
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="upload-worker")

    def submit(self, fn: Callable, *args) -> Future:
        future = self._executor.submit(fn, *args)
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Upload worker task failed: %s", exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


@dataclass
class Runtime:
    pipeline: UploadPipeline
    ledger: LedgerClient
    audit: AuditSink
    pool: Optional[UploadWorkerPool]
    session_factory: Callable[[], Session]


def build_runtime(session_factory: Callable[[], Session] | None = None, *, with_pool: bool = True) -> Runtime:
    session_factory = session_factory or SessionLocal
    audit = build_audit_sink(session_factory)
    cache = build_cache()
    pool = UploadWorkerPool() if with_pool else None
    pipeline = UploadPipeline(
        session_factory,
        storage=get_storage_provider(),
        ocr=OcrExtractor(build_ocr_provider()),
        vision=VisionValidator(build_vision_provider(), cache),
        audit=audit,
        executor=pool,
    )
    ledger = build_ledger_client()
    logger.info("Runtime built upload_workers=%s cache=%s", pool.max_workers if pool else 0, cache.enabled)
    return Runtime(pipeline=pipeline, ledger=ledger, audit=audit, pool=pool, session_factory=session_factory)


def run_distribution_scheduler(
    stop_event: threading.Event,
    *,
    ledger: LedgerClient,
    audit: AuditSink | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
    interval_sec: int | None = None,
) -> None:
    log = logging.getLogger("distribution")
    interval_sec = max(5, int(interval_sec or settings.distribution_interval_sec))
    log.info("Distribution scheduler started (interval=%ss)", interval_sec)
    while not stop_event.is_set():
        try:
            with session_factory() as db:
                sweep_pending(db, ledger=ledger, audit=audit, batch_size=settings.distribution_batch_size)
        except Exception as exc:
            log.exception("Distribution cycle failed: %s", exc)
        stop_event.wait(interval_sec)
    log.info("Distribution scheduler stopped")


def run_confirmation_reconciler(
    stop_event: threading.Event,
    *,
    ledger: LedgerClient,
    audit: AuditSink | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
    interval_sec: int | None = None,
) -> None:
    log = logging.getLogger("reconciliation")
    interval_sec = max(5, int(interval_sec or settings.reconcile_interval_sec))
    log.info("Confirmation reconciler started (interval=%ss)", interval_sec)
    while not stop_event.is_set():
        try:
            with session_factory() as db:
                sweep_sent(db, ledger=ledger, audit=audit, batch_size=settings.reconcile_batch_size)
        except Exception as exc:
            log.exception("Reconcile cycle failed: %s", exc)
        stop_event.wait(interval_sec)
    log.info("Confirmation reconciler stopped")


def run_upload_recovery(
    stop_event: threading.Event,
    *,
    pipeline: UploadPipeline,
    interval_sec: int | None = None,
) -> None:
    log = logging.getLogger("upload_pipeline")
    interval_sec = max(30, int(interval_sec or settings.recovery_interval_sec))
    log.info("Upload recovery started (interval=%ss)", interval_sec)
    while not stop_event.is_set():
        try:
            pipeline.recover_stuck_uploads()
        except Exception as exc:
            log.exception("Upload recovery cycle failed: %s", exc)
        stop_event.wait(interval_sec)
    log.info("Upload recovery stopped")


def start_thread(target: Callable, name: str, **kwargs) -> tuple[threading.Event, threading.Thread]:
    stop_event = threading.Event()
    thread = threading.Thread(target=target, args=(stop_event,), kwargs=kwargs, daemon=True, name=name)
    thread.start()
    return stop_event, thread


def start_sweeps(runtime: Runtime) -> list[tuple[threading.Event, threading.Thread]]:
    return [
        start_thread(
            run_distribution_scheduler,
            "distribution-scheduler",
            ledger=runtime.ledger,
            audit=runtime.audit,
            session_factory=runtime.session_factory,
        ),
        start_thread(
            run_confirmation_reconciler,
            "confirmation-reconciler",
            ledger=runtime.ledger,
            audit=runtime.audit,
            session_factory=runtime.session_factory,
        ),
        start_thread(run_upload_recovery, "upload-recovery", pipeline=runtime.pipeline),
    ]


def stop_sweeps(handles: list[tuple[threading.Event, threading.Thread]], timeout: float = 5.0) -> None:
    for stop_event, _ in handles:
        stop_event.set()
    for _, thread in handles:
        thread.join(timeout=timeout)
