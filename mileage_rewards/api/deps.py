"""
Shared FastAPI dependencies and error mapping for the v1 routers.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from ..core.errors import ExternalServiceError, NotFoundError, RewardStateError, ServiceError, ValidationError
from ..services.audit import AuditSink
from ..services.scheduler import Runtime
from ..services.upload_pipeline import UploadPipeline


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return runtime


def get_pipeline(request: Request) -> UploadPipeline:
    return get_runtime(request).pipeline


def get_audit(request: Request) -> AuditSink:
    return get_runtime(request).audit


def as_http_error(exc: ServiceError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, RewardStateError):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, ExternalServiceError):
        return HTTPException(status_code=502, detail=exc.message)
    return HTTPException(status_code=500, detail="Internal error")
