from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from coopadmin.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PASSWORD_PATTERN = r"^[a-zA-Z0-9!@#$%&*]{3,25}$"
DEFAULT_PASSWORD_RULE_MESSAGE = "must be 3-25 characters of letters, digits or !@#$%&*"
GENERIC_PASSWORD_RULE_MESSAGE = "does not meet the password requirements"


class Environment(str, Enum):
    """Deployment stage; controls error detail and test-only response fields."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class PasswordAlgo(str, Enum):
    PBKDF2_SHA512 = "pbkdf2_sha512"
    ARGON2ID = "argon2id"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the admin auth backend."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "NODE_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/coopadmin", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    secrets_dir: str = env_field("/srv/coopadmin", "SECRETS_DIR")

    access_token_secret: str = env_field(
        None, "ACCESS_TOKEN_SECRET", validate_default=True
    )
    invite_token_secret: str = env_field(
        None, "INVITE_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("coopadmin", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        60 * 7,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of admin session tokens",
    )
    invite_token_ttl_minutes: int = env_field(
        60 * 3,
        "INVITE_TOKEN_TTL_MINUTES",
        description="Lifetime of signed admin invite links",
    )
    reset_token_ttl_minutes: int = env_field(
        60 * 24,
        "RESET_TOKEN_TTL_MINUTES",
        description="Lifetime of opaque password reset tokens",
    )

    # Revocation cache
    revocation_ceiling_seconds: int = env_field(
        60 * 60 * 24 * 2,
        "REVOCATION_CEILING_SECONDS",
        description="Upper bound on how long a logged-out token stays in the denylist",
    )
    revocation_fail_open: bool = env_field(
        False,
        "REVOCATION_FAIL_OPEN",
        description=(
            "Accept tokens when the revocation store is unreachable. Off by default; "
            "turning it on accepts temporarily stale revocation."
        ),
    )
    login_throttle_seconds: int = env_field(
        2,
        "LOGIN_THROTTLE_SECONDS",
        description="Window after a failed login during which further attempts are refused",
    )
    cache_timeout_seconds: float = env_field(5.0, "CACHE_TIMEOUT_SECONDS")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")

    # Password hashing
    password_algo: PasswordAlgo = env_field(PasswordAlgo.PBKDF2_SHA512, "PASSWORD_ALGO")
    password_iterations: int = env_field(10_000, "PASSWORD_ITERATIONS")
    password_pattern: str = env_field(DEFAULT_PASSWORD_PATTERN, "PASSWORD_PATTERN")
    password_rule_message: str | None = env_field(
        None,
        "PASSWORD_RULE_MESSAGE",
        description="Text shown after \"Password\" when PASSWORD_PATTERN rejects a password",
    )

    # Notification dispatch
    frontend_url: str = env_field("http://localhost:3000", "FRONT_END_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Coop Admin", "EMAIL_FROM_NAME")
    email_max_attempts: int = env_field(3, "EMAIL_MAX_ATTEMPTS")
    email_backoff_seconds: float = env_field(5.0, "EMAIL_BACKOFF_SECONDS")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_test(self) -> bool:
        return self.environment == Environment.TEST

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Environment:
        if isinstance(value, Environment):
            return value
        normalized = str(value or "development").strip().lower()
        if normalized in {"dev", "local"}:
            normalized = "development"
        if normalized in {"prod", "staging"}:
            normalized = "production"
        return Environment(normalized)

    @field_validator("password_iterations")
    @classmethod
    def _validate_iterations(cls, value: int) -> int:
        if value < 10_000:
            raise ValueError("password_iterations must be at least 10000")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value or []

    @field_validator("access_token_secret", "invite_token_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        return _load_or_create_secret(info.field_name)


def _load_or_create_secret(name: str) -> str:
    """Persist a generated signing secret so tokens survive restarts."""

    root = Path(os.getenv("SECRETS_DIR", "/srv/coopadmin"))
    secret_path = root / f".{name}"

    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f".{name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {name}; set {name.upper()} or make SECRETS_DIR writable"
        ) from exc
    logger.info("secret_generated", name=name, path=str(secret_path))
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
