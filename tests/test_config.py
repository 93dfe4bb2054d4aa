import pytest
from pydantic import ValidationError

from trackerauth.config import Environment, Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_env_names_map_to_fields(self, monkeypatch):
        monkeypatch.setenv("JWT_EXPIRATION_MINUTES", "30")
        monkeypatch.setenv("JWT_REFRESH_EXPIRATION_DAYS", "14")
        monkeypatch.setenv("MAX_FAILED_LOGIN_ATTEMPTS", "3")
        monkeypatch.setenv("APP_ENV", " Staging ")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 30
        assert settings.refresh_token_ttl_days == 14
        assert settings.max_failed_login_attempts == 3
        assert settings.environment == Environment.STAGING
        assert settings.jwt_issuer == "tracker-api-tests"

    def test_dotenv_file_fills_gaps(self, monkeypatch, tmp_path):
        (tmp_path / ".env").write_text("LOGIN_LOCKOUT_MINUTES=20\nJWT_EXPIRATION_MINUTES=90\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("JWT_EXPIRATION_MINUTES", "45")

        settings = Settings.from_env()

        assert settings.login_lockout_minutes == 20
        # Process environment wins over the file
        assert settings.access_token_ttl_minutes == 45

    def test_non_positive_limits_are_rejected(self, monkeypatch):
        monkeypatch.setenv("ACCOUNT_LOCKOUT_MINUTES", "0")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_cached_settings_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("BUILD_SHA", "abc123")
        reset_settings_cache()
        assert get_settings().build_sha == "abc123"
        reset_settings_cache()


class TestDerivedSettings:
    def test_reset_tokens_never_exposed_in_production(self):
        settings = Settings(environment="production", debug_reset_tokens=True)
        assert settings.is_production
        assert settings.expose_reset_tokens is False

        assert Settings(debug_reset_tokens=True).expose_reset_tokens is True
        assert Settings().expose_reset_tokens is False

    def test_cors_origins_are_split(self):
        settings = Settings(cors_allow_origins="https://a.example, ,https://b.example")
        assert settings.cors_origins == ["https://a.example", "https://b.example"]

    def test_blank_default_role_falls_back_to_user(self):
        assert Settings(default_registration_role="  ").default_registration_role == "User"
