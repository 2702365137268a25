"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from tradedesk.config import (
    ClientSettings,
    Settings,
    StorageBackend,
    get_settings,
    reset_settings_cache,
)


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    """Run from an empty directory so no stray .env leaks in."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATA_ROOT", str(tmp_path / "data"))
    return monkeypatch


class TestSettings:
    def test_env_overrides(self, isolated_env):
        isolated_env.setenv("SESSION_TTL_DAYS", "3")
        isolated_env.setenv("STORAGE_BACKEND", "redis")
        isolated_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        isolated_env.setenv("SEED_ADMIN_ENABLED", "false")

        settings = Settings.from_env()

        assert settings.session_ttl_days == 3
        assert settings.storage_backend == StorageBackend.REDIS
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.seed_admin_enabled is False

    def test_dotenv_is_a_fallback(self, isolated_env, tmp_path):
        (tmp_path / ".env").write_text("REMEMBER_ME_TTL_DAYS=14\nSESSION_TTL_DAYS=2\n")
        isolated_env.setenv("SESSION_TTL_DAYS", "5")

        settings = Settings.from_env()

        assert settings.remember_me_ttl_days == 14
        assert settings.session_ttl_days == 5

    def test_defaults(self, isolated_env):
        isolated_env.setenv("TOKEN_SECRET", "s" * 40)
        settings = Settings.from_env()
        assert settings.session_ttl_days == 7
        assert settings.remember_me_ttl_days == 30
        assert settings.seed_admin_email == "admin@example.com"
        assert settings.default_landing_path == "/dashboard"
        assert not settings.is_production

    def test_token_secret_is_generated_and_persisted(self, isolated_env, tmp_path):
        isolated_env.delenv("TOKEN_SECRET", raising=False)

        first = Settings.from_env()
        second = Settings.from_env()

        secret_file = tmp_path / "data" / ".token_secret"
        assert secret_file.read_text() == first.token_secret
        assert second.token_secret == first.token_secret
        assert len(first.token_secret) >= 32

    def test_ttl_must_be_positive(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(data_root=str(tmp_path), token_secret="x" * 40, session_ttl_days=0)

    def test_unknown_backend_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(data_root=str(tmp_path), token_secret="x" * 40, storage_backend="mongo")

    def test_production_flag(self, tmp_path):
        settings = Settings(
            data_root=str(tmp_path), token_secret="x" * 40, environment="Production"
        )
        assert settings.is_production

    def test_settings_cache(self, isolated_env):
        isolated_env.setenv("SESSION_TTL_DAYS", "4")
        reset_settings_cache()
        cached = get_settings()
        isolated_env.setenv("SESSION_TTL_DAYS", "9")
        assert get_settings() is cached
        reset_settings_cache()
        assert get_settings().session_ttl_days == 9


class TestClientSettings:
    def test_client_env(self, isolated_env):
        isolated_env.setenv("TRADEDESK_API_URL", "https://desk.example")
        isolated_env.setenv("TRADEDESK_REFRESH_INTERVAL", "60")
        settings = ClientSettings.from_env()
        assert settings.base_url == "https://desk.example"
        assert settings.refresh_interval_seconds == 60.0
        assert settings.expiry_warning_seconds == 300.0
        assert settings.storage_path is None
