from datetime import timedelta

import pytest

from core import config as config_module
from core.security import create_access_token, decode_access_token


@pytest.fixture
def fresh_settings():
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


def test_non_local_debug_mode_is_blocked(monkeypatch, fresh_settings):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("JWT_SECRET", "real-secret")

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_default_secret_is_blocked(monkeypatch, fresh_settings):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)

    with pytest.raises(ValueError, match="default JWT secret"):
        config_module.get_settings()


def test_unknown_allocator_policy_is_blocked(monkeypatch, fresh_settings):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("ALLOCATOR_QUEUE_POLICY", "largest_first")

    with pytest.raises(ValueError, match="allocator_queue_policy"):
        config_module.get_settings()


def test_local_allows_dev_defaults(monkeypatch, fresh_settings):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)

    settings = config_module.get_settings()
    assert settings.app_env == "local"
    assert settings.stage_timezone == "Asia/Riyadh"
    assert settings.allocator_queue_policy == "strict_fifo"


def test_access_token_round_trip():
    token = create_access_token({"sub": "operator-7"})

    assert decode_access_token(token)["sub"] == "operator-7"


def test_expired_or_tampered_token_is_rejected():
    expired = create_access_token({"sub": "operator-7"}, expires_delta=timedelta(seconds=-1))

    assert decode_access_token(expired) is None
    assert decode_access_token("not-a-token") is None
