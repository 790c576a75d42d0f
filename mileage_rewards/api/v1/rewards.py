"""
Reward listing, stats and user actions (retry, cancel).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ...core.db import get_db
from ...core.errors import ServiceError
from ...core.pagination import clamp_page_size, set_pagination_headers
from ...schemas.reward import RewardOut, RewardPage, RewardStatsOut
from ...services.audit import AuditSink
from ...services.rewards import cancel_reward, get_reward, get_reward_stats, get_user_rewards, retry_reward
from ..deps import as_http_error, get_audit


router = APIRouter(prefix="/api/v1", tags=["rewards"])


@router.get("/users/{user_id}/rewards", response_model=RewardPage)
def list_user_rewards(
    user_id: str,
    response: Response,
    type: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    blockchain_status: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1),
    db: Session = Depends(get_db),
) -> RewardPage:
    page_size = clamp_page_size(page_size)
    items, total = get_user_rewards(
        db,
        user_id,
        reward_type=type,
        status=status,
        blockchain_status=blockchain_status,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
    )
    set_pagination_headers(response, total=total, page=page, page_size=page_size)
    return RewardPage(
        items=[RewardOut.from_reward(r) for r in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/users/{user_id}/rewards/stats", response_model=RewardStatsOut)
def user_reward_stats(user_id: str, db: Session = Depends(get_db)) -> dict:
    return get_reward_stats(db, user_id)


@router.get("/rewards/{reward_id}", response_model=RewardOut)
def read_reward(reward_id: str, user_id: Optional[str] = Query(None), db: Session = Depends(get_db)) -> RewardOut:
    try:
        reward = get_reward(db, reward_id, user_id)
    except ServiceError as exc:
        raise as_http_error(exc) from exc
    return RewardOut.from_reward(reward)


@router.post("/rewards/{reward_id}/retry", response_model=RewardOut)
def retry(
    reward_id: str,
    user_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit),
) -> RewardOut:
    try:
        reward = retry_reward(db, reward_id, user_id=user_id, audit=audit)
    except ServiceError as exc:
        raise as_http_error(exc) from exc
    return RewardOut.from_reward(reward)


@router.post("/rewards/{reward_id}/cancel", response_model=RewardOut)
def cancel(
    reward_id: str,
    user_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit),
) -> RewardOut:
    try:
        reward = cancel_reward(db, reward_id, user_id=user_id, audit=audit)
    except ServiceError as exc:
        raise as_http_error(exc) from exc
    return RewardOut.from_reward(reward)
