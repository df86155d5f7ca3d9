"""Tests for environment-driven settings."""

import os
import stat

import pytest
from pydantic import ValidationError

from coopadmin.config import Environment, PasswordAlgo, Settings, get_settings


@pytest.fixture
def secrets_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRETS_DIR", str(tmp_path))
    return tmp_path


class TestFromEnv:
    def test_reads_environment_variables(self, monkeypatch):
        monkeypatch.setenv("NODE_ENV", "production")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
        monkeypatch.setenv("REVOCATION_FAIL_OPEN", "true")
        monkeypatch.setenv("PASSWORD_ALGO", "argon2id")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = Settings.from_env()
        assert settings.environment == Environment.PRODUCTION
        assert settings.is_production
        assert settings.access_token_ttl_minutes == 30
        assert settings.revocation_fail_open is True
        assert settings.password_algo == PasswordAlgo.ARGON2ID
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("dev", Environment.DEVELOPMENT),
            ("local", Environment.DEVELOPMENT),
            ("TEST", Environment.TEST),
            ("staging", Environment.PRODUCTION),
        ],
    )
    def test_environment_aliases(self, monkeypatch, raw, expected):
        monkeypatch.setenv("NODE_ENV", raw)
        assert Settings.from_env().environment == expected

    def test_defaults(self):
        settings = Settings(access_token_secret="x" * 40, invite_token_secret="y" * 40)
        assert settings.access_token_ttl_minutes == 420
        assert settings.invite_token_ttl_minutes == 180
        assert settings.reset_token_ttl_minutes == 1440
        assert settings.revocation_ceiling_seconds == 172800
        assert settings.login_throttle_seconds == 2
        assert settings.revocation_fail_open is False
        assert settings.password_iterations == 10_000

    def test_iterations_floor(self):
        with pytest.raises(ValidationError):
            Settings(
                access_token_secret="x" * 40,
                invite_token_secret="y" * 40,
                password_iterations=500,
            )

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestSecrets:
    def test_missing_secret_is_generated_and_persisted(self, secrets_dir, monkeypatch):
        """Generated secrets survive a restart and are private to the owner."""
        monkeypatch.delenv("ACCESS_TOKEN_SECRET", raising=False)
        monkeypatch.setenv("INVITE_TOKEN_SECRET", "i" * 40)
        first = Settings.from_env()
        second = Settings.from_env()
        assert len(first.access_token_secret) >= 32
        assert first.access_token_secret == second.access_token_secret

        secret_file = secrets_dir / ".access_token_secret"
        assert secret_file.exists()
        assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600

    def test_explicit_secret_wins(self, secrets_dir, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_SECRET", "explicit-secret-value-0123456789abcdef")
        monkeypatch.setenv("INVITE_TOKEN_SECRET", "i" * 40)
        settings = Settings.from_env()
        assert settings.access_token_secret == "explicit-secret-value-0123456789abcdef"
        assert not (secrets_dir / ".access_token_secret").exists()
