"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from framesense.config import DEFAULT_PRICE_TIERS, Settings, Tier, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run from an empty directory so no .env file leaks in."""
    monkeypatch.chdir(tmp_path)
    reset_settings_cache()
    yield monkeypatch
    reset_settings_cache()


class TestJwtSecret:
    """Tests for the signing secret rules."""

    def test_missing_secret_refuses_to_start(self):
        with pytest.raises(ValidationError, match="JWT_SECRET is not set"):
            Settings(jwt_secret=None)

    def test_short_secret_refused(self):
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(jwt_secret="too-short")

    def test_insecure_dev_mode_generates_secret(self):
        """Local development may run with a throwaway secret."""
        first = Settings(jwt_secret=None, insecure_dev_mode=True)
        second = Settings(jwt_secret=None, insecure_dev_mode=True)
        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret != second.jwt_secret


class TestParsing:
    """Tests for values that arrive as strings."""

    def test_price_tiers_from_json(self, settings_factory):
        settings = settings_factory(billing_price_tiers='{"price_a": "pro"}')
        assert settings.billing_price_tiers == {"price_a": Tier.PRO}

    def test_price_tiers_reject_bad_json(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(billing_price_tiers="[not json")

    def test_price_tiers_reject_unknown_tier(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(billing_price_tiers='{"price_a": "platinum"}')

    def test_cors_origins_split(self, settings_factory):
        settings = settings_factory(cors_allow_origins="https://a.example, https://b.example,")
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_defaults(self, settings):
        assert settings.default_tier == Tier.PREMIUM
        assert settings.session_ttl_days == 30
        assert settings.password_min_length == 6
        assert settings.billing_price_tiers == DEFAULT_PRICE_TIERS


class TestFromEnv:
    """Tests for environment and .env loading."""

    def test_reads_environment(self, clean_env):
        clean_env.setenv("JWT_SECRET", "x" * 40)
        clean_env.setenv("SESSION_TTL_DAYS", "7")
        clean_env.setenv("DEFAULT_TIER", "free")
        settings = Settings.from_env()
        assert settings.session_ttl_days == 7
        assert settings.default_tier == Tier.FREE

    def test_reads_dotenv_file(self, clean_env, tmp_path):
        """Values missing from the environment come from .env."""
        clean_env.delenv("PASSWORD_MIN_LENGTH", raising=False)
        (tmp_path / ".env").write_text("PASSWORD_MIN_LENGTH=10\n")
        assert Settings.from_env().password_min_length == 10

    def test_environment_wins_over_dotenv(self, clean_env, tmp_path):
        clean_env.setenv("PASSWORD_MIN_LENGTH", "8")
        (tmp_path / ".env").write_text("PASSWORD_MIN_LENGTH=10\n")
        assert Settings.from_env().password_min_length == 8

    def test_get_settings_is_cached(self, clean_env):
        assert get_settings() is get_settings()
        first = get_settings()
        reset_settings_cache()
        assert get_settings() is not first
