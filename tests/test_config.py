import logging

import pytest

from mileage_rewards.core.config import Settings, get_app_env, validate_runtime_settings


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("UPLOAD_WORKERS", "8")
    monkeypatch.setenv("ALLOWED_IMAGE_TYPES", "image/jpeg, IMAGE/PNG")
    current = Settings()
    assert current.upload_workers == 8
    assert current.allowed_image_type_set == {"image/jpeg", "image/png"}


def test_unknown_app_env_defaults_to_dev(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    assert get_app_env() == "dev"


def test_dev_warns_for_missing_providers(monkeypatch, caplog):
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.delenv("LEDGER_API_URL", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    caplog.set_level(logging.WARNING)
    validate_runtime_settings(Settings())
    assert any("LEDGER_API_URL" in rec.getMessage() for rec in caplog.records)


def test_prod_rejects_missing_providers(monkeypatch):
    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.delenv("LEDGER_API_URL", raising=False)
    with pytest.raises(RuntimeError):
        validate_runtime_settings(Settings())


def test_prod_rejects_sqlite(monkeypatch):
    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.setenv("LEDGER_API_URL", "https://ledger.example.com")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///./x.db")
    with pytest.raises(RuntimeError):
        validate_runtime_settings(Settings())
