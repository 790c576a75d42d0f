"""
Entry point for the mileage rewards backend.

This module creates the FastAPI application, includes all API routers,
builds the upload pipeline and starts the reward sweeps. Run with:

    uvicorn mileage_rewards.main:app --reload

"""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from .api import api_router
from .core.config import get_app_env, settings, validate_runtime_settings
from .core.db import engine
from .core.errors import log_exception
from .models import Base
from .scripts.run_migrations import run_migrations_to_head
from .services.scheduler import build_runtime, start_sweeps, stop_sweeps


def create_app(*, runtime=None, enable_sweeps: bool | None = None) -> FastAPI:
    app = FastAPI(title="Mileage Rewards Backend", version="0.1.0")
    app.include_router(api_router)
    if settings.storage_backend.lower() == "local":
        uploads_root = Path(settings.storage_dir or Path(__file__).resolve().parents[1] / "data" / "uploads").expanduser()
        app.mount("/media/uploads", StaticFiles(directory=uploads_root, check_dir=False), name="uploads")
    app.state.runtime = runtime
    app.state.sweep_handles = []
    sweeps_enabled = settings.enable_sweeps if enable_sweeps is None else enable_sweeps

    @app.on_event("startup")
    def _startup() -> None:
        logger = logging.getLogger("startup")
        env = get_app_env()
        validate_runtime_settings()
        if settings.auto_create_db:
            try:
                Base.metadata.create_all(bind=engine)
            except Exception as exc:
                log_exception(logger, "DB create_all failed", exc=exc)
                if env == "prod":
                    raise
        if settings.auto_run_migrations:
            try:
                run_migrations_to_head()
            except Exception as exc:
                log_exception(logger, "DB migrations failed", exc=exc)
                if env == "prod":
                    raise
        if app.state.runtime is None:
            app.state.runtime = build_runtime()
        if sweeps_enabled:
            app.state.sweep_handles = start_sweeps(app.state.runtime)
            logger.info("Started %s background sweeps", len(app.state.sweep_handles))

    @app.on_event("shutdown")
    def _shutdown() -> None:
        stop_sweeps(app.state.sweep_handles or [])
        app.state.sweep_handles = []
        runtime = app.state.runtime
        if runtime is not None and runtime.pool is not None:
            runtime.pool.shutdown(wait=True)

    return app


app = create_app()
