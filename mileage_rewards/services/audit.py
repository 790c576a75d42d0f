"""
Reward history sink.

Recording is best-effort: callers invoke it after their own transaction has
committed, and a failure to write history is logged and otherwise ignored.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..models.history_event import HistoryEvent


logger = logging.getLogger("audit")


class AuditSink:
    def record(self, event_type: str, user_id: Optional[str], payload: dict | None = None, *, reward_id: str | None = None) -> None:
        raise NotImplementedError


class LogAuditSink(AuditSink):
    def record(self, event_type: str, user_id: Optional[str], payload: dict | None = None, *, reward_id: str | None = None) -> None:
        logger.info("History event=%s user_id=%s reward_id=%s payload=%s", event_type, user_id, reward_id, payload or {})


class DatabaseAuditSink(AuditSink):
    """Writes history rows in a session of its own."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, event_type: str, user_id: Optional[str], payload: dict | None = None, *, reward_id: str | None = None) -> None:
        try:
            with self.session_factory() as db:
                db.add(HistoryEvent(event_type=event_type, user_id=user_id, reward_id=reward_id, payload=payload or {}))
                db.commit()
        except Exception as exc:
            logger.warning("History write failed event=%s user_id=%s reward_id=%s err=%s", event_type, user_id, reward_id, exc)


def build_audit_sink(session_factory: Callable[[], Session] | None = None) -> AuditSink:
    if session_factory is None:
        return LogAuditSink()
    return DatabaseAuditSink(session_factory)
