"""
Upgrade the database schema to the latest Alembic revision.

Usage:
    python -m mileage_rewards.scripts.run_migrations
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from ..core.config import settings


logger = logging.getLogger("migrations")

BASELINE_REVISION = "20261019_01"
CORE_TABLES = frozenset({"users", "vehicles", "odometer_uploads", "rewards", "history_events"})


def alembic_config(database_url: str | None = None) -> Config:
    project_root = Path(__file__).resolve().parents[2]
    ini_path = project_root / "alembic.ini"
    if not ini_path.exists():
        raise FileNotFoundError(f"alembic.ini not found at {ini_path}")
    cfg = Config(str(ini_path))
    cfg.set_main_option("script_location", str(project_root / "alembic"))
    cfg.set_main_option("sqlalchemy.url", database_url or settings.database_url)
    return cfg


def schema_without_revision(database_url: str) -> bool:
    """True when create_all() built the tables but Alembic never stamped them."""
    engine = create_engine(database_url)
    try:
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    return "alembic_version" not in tables and CORE_TABLES <= tables


def run_migrations_to_head(database_url: str | None = None) -> None:
    cfg = alembic_config(database_url)
    url = cfg.get_main_option("sqlalchemy.url")
    if schema_without_revision(url):
        logger.info("Stamping existing schema at %s", BASELINE_REVISION)
        command.stamp(cfg, BASELINE_REVISION)
    command.upgrade(cfg, "head")
    logger.info("Schema upgraded to head")


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    try:
        run_migrations_to_head()
    except Exception as exc:
        logger.error("Migration failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
