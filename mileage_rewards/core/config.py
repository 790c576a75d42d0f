"""
Configuration for the mileage rewards backend.

Settings are loaded from environment variables or a `.env` file placed at
the project root. Defaults are suitable for local development: SQLite, local
file storage, no cache and no ledger gateway.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pathlib import Path
from dotenv import load_dotenv
import logging
import os

ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(ENV_PATH, override=False)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(default="sqlite+pysqlite:///./mileage_rewards.db", alias="DATABASE_URL")
    # Cache is optional; no URL means every lookup misses.
    redis_url: str | None = Field(default=None, alias="REDIS_URL")

    storage_backend: str = Field(default="local", alias="STORAGE_BACKEND")
    storage_dir: str | None = Field(default=None, alias="STORAGE_DIR")
    storage_public_base_url: str | None = Field(default=None, alias="STORAGE_PUBLIC_BASE_URL")
    s3_bucket: str | None = Field(default=None, alias="S3_BUCKET")
    s3_region: str | None = Field(default=None, alias="S3_REGION")
    s3_endpoint: str | None = Field(default=None, alias="S3_ENDPOINT")
    s3_public_url: str | None = Field(default=None, alias="S3_PUBLIC_URL")

    ocr_provider: str = Field(default="textract", alias="OCR_PROVIDER")
    aws_region: str = Field(default="us-east-1", alias="AWS_REGION")

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_vision_model: str = Field(default="gpt-4o-mini", alias="OPENAI_VISION_MODEL")

    ledger_api_url: str | None = Field(default=None, alias="LEDGER_API_URL")
    ledger_api_token: str | None = Field(default=None, alias="LEDGER_API_TOKEN")
    ledger_timeout_sec: int = Field(default=20, alias="LEDGER_TIMEOUT_SEC")

    max_upload_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")
    allowed_image_types: str = Field(default="image/jpeg,image/png,image/webp", alias="ALLOWED_IMAGE_TYPES")

    upload_workers: int = Field(default=4, alias="UPLOAD_WORKERS")
    distribution_interval_sec: int = Field(default=60, alias="DISTRIBUTION_INTERVAL_SEC")
    reconcile_interval_sec: int = Field(default=60, alias="RECONCILE_INTERVAL_SEC")
    recovery_interval_sec: int = Field(default=300, alias="RECOVERY_INTERVAL_SEC")
    stuck_upload_after_sec: int = Field(default=900, alias="STUCK_UPLOAD_AFTER_SEC")
    distribution_batch_size: int = Field(default=100, alias="DISTRIBUTION_BATCH_SIZE")
    reconcile_batch_size: int = Field(default=50, alias="RECONCILE_BATCH_SIZE")

    enable_sweeps: bool = Field(default=True, alias="ENABLE_SWEEPS")
    auto_create_db: bool = Field(default=True, alias="AUTO_CREATE_DB")
    auto_run_migrations: bool = Field(default=False, alias="AUTO_RUN_MIGRATIONS")

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True)

    @property
    def allowed_image_type_set(self) -> set[str]:
        return {part.strip().lower() for part in self.allowed_image_types.split(",") if part.strip()}


settings = Settings()


def get_app_env() -> str:
    raw = os.getenv("APP_ENV") or "dev"
    env = raw.strip().lower()
    if env not in {"dev", "prod"}:
        logging.getLogger("config").warning("Unknown APP_ENV=%s; defaulting to dev", raw)
        env = "dev"
    return env


def validate_runtime_settings(current: Settings | None = None) -> None:
    current = current or settings
    env = get_app_env()
    logger = logging.getLogger("config")

    missing = []
    if not current.ledger_api_url:
        missing.append("LEDGER_API_URL")
    if not current.openai_api_key:
        missing.append("OPENAI_API_KEY")
    if current.storage_backend.lower() == "s3" and not current.s3_bucket:
        missing.append("S3_BUCKET")

    if env == "prod":
        if missing:
            raise RuntimeError(f"Missing required settings in prod: {', '.join(missing)}")
        if current.database_url.startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must not point at SQLite in prod.")
        if not current.redis_url:
            logger.warning("REDIS_URL not set; external service results will not be cached.")
        if current.auto_create_db:
            logger.warning("AUTO_CREATE_DB is enabled in prod. Consider setting it to false.")
    else:
        for name in missing:
            logger.warning("%s not set; the dependent provider will be unavailable.", name)
