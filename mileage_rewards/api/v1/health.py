"""
Health endpoint: database reachability and background sweep status.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from ...core.config import get_app_env
from ...core.db import get_db


router = APIRouter(prefix="/api/v1/health", tags=["health"])
logger = logging.getLogger("health")


@router.get("")
def health(request: Request, db: Session = Depends(get_db)) -> dict:
    database_ok = True
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Health DB check failed: %s", exc)
        database_ok = False
    handles = getattr(request.app.state, "sweep_handles", None) or []
    return {
        "status": "ok" if database_ok else "degraded",
        "env": get_app_env(),
        "timestamp_utc": datetime.utcnow().isoformat() + "Z",
        "database": database_ok,
        "sweeps": {thread.name: thread.is_alive() for _, thread in handles},
    }
