import pytest

from config import Settings, settings, validate_security_settings
from database import async_database_url


def test_default_jwt_secret_is_refused(monkeypatch):
    monkeypatch.setattr(settings, "ENFORCE_SECURE_SECRETS", True)
    monkeypatch.setattr(settings, "JWT_SECRET", "change_me_in_production")

    with pytest.raises(ValueError):
        validate_security_settings()


def test_billing_requires_stripe_credentials(monkeypatch):
    monkeypatch.setattr(settings, "ENFORCE_SECURE_SECRETS", True)
    monkeypatch.setattr(settings, "JWT_SECRET", "a-sufficiently-long-random-secret-value")
    monkeypatch.setattr(settings, "BILLING_ENABLED", True)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")

    with pytest.raises(ValueError, match="STRIPE_SECRET_KEY"):
        validate_security_settings()

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    with pytest.raises(ValueError, match="STRIPE_WEBHOOK_SECRET"):
        validate_security_settings()

    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_123")
    validate_security_settings()


def test_enforcement_can_be_disabled_for_local_development(monkeypatch):
    monkeypatch.setattr(settings, "ENFORCE_SECURE_SECRETS", False)
    monkeypatch.setattr(settings, "JWT_SECRET", "")

    validate_security_settings()


def test_sync_urls_are_mapped_to_async_drivers():
    assert async_database_url("postgresql://u:p@db/x") == "postgresql+asyncpg://u:p@db/x"
    assert async_database_url("sqlite:///./local.db") == "sqlite+aiosqlite:///./local.db"
    assert async_database_url("postgresql+asyncpg://u:p@db/x") == "postgresql+asyncpg://u:p@db/x"


def test_server_binding_is_left_to_uvicorn():
    assert "API_HOST" not in Settings.model_fields
    assert "API_PORT" not in Settings.model_fields
