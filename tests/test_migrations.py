from sqlalchemy import create_engine, inspect

from mileage_rewards.models import Base
from mileage_rewards.scripts.run_migrations import (
    BASELINE_REVISION,
    run_migrations_to_head,
    schema_without_revision,
)


def _tables(url: str) -> set[str]:
    engine = create_engine(url)
    try:
        return set(inspect(engine).get_table_names())
    finally:
        engine.dispose()


def _revision(url: str) -> str:
    engine = create_engine(url)
    try:
        with engine.connect() as conn:
            return conn.exec_driver_sql("SELECT version_num FROM alembic_version").scalar_one()
    finally:
        engine.dispose()


def test_upgrade_empty_database_to_head(tmp_path):
    url = f"sqlite+pysqlite:///{tmp_path / 'fresh.db'}"
    run_migrations_to_head(url)

    tables = _tables(url)
    assert {"users", "vehicles", "odometer_uploads", "rewards", "history_events"} <= tables
    assert _revision(url) == BASELINE_REVISION


def test_create_all_schema_is_stamped_not_recreated(tmp_path):
    url = f"sqlite+pysqlite:///{tmp_path / 'legacy.db'}"
    engine = create_engine(url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    assert schema_without_revision(url) is True

    run_migrations_to_head(url)

    assert schema_without_revision(url) is False
    assert _revision(url) == BASELINE_REVISION
