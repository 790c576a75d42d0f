"""
Engine and session factory for the mileage rewards backend.

Request handlers get a session through `get_db`; upload workers and the
ledger sweeps open their own sessions from `SessionLocal` per unit of work.
"""

from __future__ import annotations

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import settings


def _pool_setting(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Worker threads share the engine with request handlers.
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": _pool_setting("DB_POOL_SIZE", 5),
        "max_overflow": _pool_setting("DB_MAX_OVERFLOW", 10),
        "pool_recycle": _pool_setting("DB_POOL_RECYCLE_SEC", 1800),
        "pool_timeout": _pool_setting("DB_POOL_TIMEOUT_SEC", 30),
    }


engine = create_engine(settings.database_url, echo=False, future=True, **engine_options(settings.database_url))

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db():
    """Yield a database session for FastAPI dependencies."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_postgres(db: Session) -> bool:
    """Row locks with SKIP LOCKED are only issued on PostgreSQL."""
    bind = db.get_bind()
    return bool(bind is not None and bind.dialect.name == "postgresql")
