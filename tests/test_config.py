import os
import stat

import pytest
from pydantic import ValidationError

from tessera.config import Settings, TokenConfig, get_settings, reset_settings_cache


def test_defaults_match_session_lifetimes(monkeypatch):
    monkeypatch.delenv("ACCESS_TOKEN_TTL_SECONDS", raising=False)
    monkeypatch.delenv("REFRESH_TOKEN_TTL_SECONDS", raising=False)
    settings = Settings.from_env()
    assert settings.access_token_ttl_seconds == 3600
    assert settings.refresh_token_ttl_seconds == 604800


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "900")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    settings = Settings.from_env()
    assert settings.access_token_ttl_seconds == 900
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.use_memory_store is True


@pytest.mark.parametrize(
    "field", ["access_token_ttl_seconds", "refresh_token_ttl_seconds", "store_timeout_seconds"]
)
def test_non_positive_values_rejected(tmp_path, field):
    with pytest.raises(ValidationError):
        Settings(state_root=str(tmp_path), jwt_secret="s" * 40, **{field: 0})


def test_negative_cleanup_interval_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Settings(
            state_root=str(tmp_path),
            jwt_secret="s" * 40,
            token_cleanup_interval_seconds=-5,
        )


def test_token_config_is_frozen(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "x" * 40)
    config = Settings.from_env().token_config()
    assert isinstance(config, TokenConfig)
    assert config.secret == "x" * 40
    with pytest.raises(Exception):
        config.secret = "other"


def test_generated_secret_is_persisted_privately(monkeypatch, tmp_path):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("STATE_ROOT", str(tmp_path))
    first = Settings.from_env()
    secret_file = tmp_path / ".jwt_secret"
    assert secret_file.exists()
    assert len(first.jwt_secret) >= 32
    assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600

    second = Settings.from_env()
    assert second.jwt_secret == first.jwt_secret


def test_short_persisted_secret_is_replaced(monkeypatch, tmp_path):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("STATE_ROOT", str(tmp_path))
    (tmp_path / ".jwt_secret").write_text("short")
    settings = Settings.from_env()
    assert settings.jwt_secret != "short"
    assert len(settings.jwt_secret) >= 32


def test_get_settings_is_cached(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "120")
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().access_token_ttl_seconds == 120
