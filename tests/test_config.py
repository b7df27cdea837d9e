import pytest

from authgate.config import DeliveryMode, Settings
from conftest import make_settings

STRONG_SECRET = "a" * 64


def test_cors_origins_accept_json_or_comma_list(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", '["http://a.example", "http://b.example"]')
    assert Settings().CORS_ORIGINS == ["http://a.example", "http://b.example"]

    monkeypatch.setenv("CORS_ORIGINS", "http://a.example, http://b.example,")
    assert Settings().CORS_ORIGINS == ["http://a.example", "http://b.example"]

    monkeypatch.setenv("CORS_ORIGINS", "")
    assert Settings().CORS_ORIGINS == []


def test_delivery_mode_from_environment(monkeypatch):
    monkeypatch.setenv("OTP_DELIVERY_MODE", "logged_fallback")
    assert Settings().OTP_DELIVERY_MODE is DeliveryMode.LOGGED_FALLBACK


def test_database_url_built_from_parts():
    config = make_settings(
        DATABASE_URL="",
        POSTGRES_USER="auth",
        POSTGRES_PASSWORD="p@ss word",
        POSTGRES_HOST="db",
        POSTGRES_PORT=5433,
        POSTGRES_DB="authgate",
    )
    assert config.get_database_url() == "postgresql://auth:p%40ss+word@db:5433/authgate"


def test_token_lifetimes():
    config = make_settings(ACCESS_TOKEN_EXPIRE_MINUTES=15)
    assert config.access_token_ttl_seconds == 900


def test_non_production_settings_are_not_enforced():
    make_settings(ENVIRONMENT="development", SECRET_KEY="", DEBUG=True).validate_security_settings()


@pytest.mark.parametrize(
    "overrides",
    [
        {"SECRET_KEY": ""},
        {"SECRET_KEY": "change-me"},
        {"SECRET_KEY": "too-short"},
        {"SECRET_KEY": STRONG_SECRET, "OTP_DELIVERY_MODE": "logged_fallback"},
        {"SECRET_KEY": STRONG_SECRET, "DEBUG": True},
    ],
)
def test_production_rejects_insecure_settings(overrides):
    config = make_settings(ENVIRONMENT="production", **overrides)
    with pytest.raises(ValueError):
        config.validate_security_settings()


def test_production_accepts_secure_settings():
    make_settings(
        ENVIRONMENT="production",
        SECRET_KEY=STRONG_SECRET,
        DEBUG=False,
        OTP_DELIVERY_MODE="provider",
    ).validate_security_settings()
