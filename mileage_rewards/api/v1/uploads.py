"""
Odometer upload endpoints.

Accepting an upload stores the image and queues processing; clients poll
``GET /api/v1/uploads/{id}`` for the outcome.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.orm import Session

from ...core.db import get_db
from ...core.errors import ServiceError
from ...core.pagination import clamp_page_size
from ...schemas.upload import AssignVehicleIn, UploadAccepted, UploadOut, UploadStatsOut
from ...services.upload_pipeline import UploadPipeline, get_upload_status, get_user_upload_stats, get_user_uploads
from ..deps import as_http_error, get_pipeline


router = APIRouter(prefix="/api/v1", tags=["uploads"])


@router.post("/uploads", response_model=UploadAccepted, status_code=202)
def create_upload(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    vehicle_id: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> UploadAccepted:
    data = file.file.read()
    try:
        upload_id = pipeline.ingest(
            db,
            data,
            user_id=user_id,
            content_type=file.content_type,
            vehicle_id=vehicle_id or None,
        )
        upload = get_upload_status(db, upload_id)
        db.refresh(upload)
    except ServiceError as exc:
        raise as_http_error(exc) from exc
    return UploadAccepted(upload_id=upload_id, status=upload.status)


@router.get("/uploads/{upload_id}", response_model=UploadOut)
def get_upload(
    upload_id: str,
    user_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> UploadOut:
    try:
        upload = get_upload_status(db, upload_id, user_id)
    except ServiceError as exc:
        raise as_http_error(exc) from exc
    return UploadOut.model_validate(upload)


@router.post("/uploads/{upload_id}/vehicle", response_model=UploadOut)
def assign_upload_vehicle(
    upload_id: str,
    payload: AssignVehicleIn,
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> UploadOut:
    try:
        upload = pipeline.assign_vehicle(upload_id, payload.vehicle_id, user_id=payload.user_id)
    except ServiceError as exc:
        raise as_http_error(exc) from exc
    return UploadOut.model_validate(upload)


@router.get("/users/{user_id}/uploads")
def list_user_uploads(
    user_id: str,
    limit: int = Query(20, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    limit = clamp_page_size(limit)
    items = get_user_uploads(db, user_id, limit=limit, offset=offset)
    return {
        "items": [UploadOut.model_validate(u) for u in items],
        "limit": limit,
        "offset": offset,
    }


@router.get("/users/{user_id}/uploads/stats", response_model=UploadStatsOut)
def user_upload_stats(user_id: str, db: Session = Depends(get_db)) -> dict:
    return get_user_upload_stats(db, user_id)
