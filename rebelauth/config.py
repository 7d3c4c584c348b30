from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/rebelauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Enables the Redis-backed login attempt counter when set",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no SMTP, memory defaults)",
    )
    server_host: str = env_field("0.0.0.0", "HOST")
    server_port: int = env_field(8000, "PORT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: str = env_field(
        "", "CORS_ALLOW_ORIGINS", description="Comma-separated list of allowed origins"
    )

    # Telegram login widget and bot-issued Mini App flow share one bot token
    telegram_bot_token: str | None = env_field(None, "TELEGRAM_BOT_TOKEN")
    telegram_admin_id: str | None = env_field(
        None,
        "TELEGRAM_ADMIN_ID",
        description="Telegram user id that is created with the admin flag",
    )
    telegram_auth_max_age_seconds: int = env_field(86400, "TELEGRAM_AUTH_MAX_AGE_SECONDS")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_discord_client_id: str | None = env_field(None, "OAUTH_DISCORD_CLIENT_ID")
    oauth_discord_client_secret: str | None = env_field(None, "OAUTH_DISCORD_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(
        None,
        "OAUTH_REDIRECT_URI",
        description="Callback base; the provider name is appended",
    )
    oauth_state_secret: str | None = env_field(None, "OAUTH_STATE_SECRET")
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("watchRebel", "EMAIL_FROM_NAME")

    # Session and token lifetimes
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS")
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")

    # Login attempt policy
    login_max_failures: int = env_field(5, "LOGIN_MAX_FAILURES")
    login_window_minutes: int = env_field(15, "LOGIN_WINDOW_MINUTES")
    login_lock_minutes: int = env_field(30, "LOGIN_LOCK_MINUTES")
    login_attempt_retention_hours: int = env_field(24, "LOGIN_ATTEMPT_RETENTION_HOURS")

    # Per-client request limits on the unauthenticated endpoints; 0 disables a limit
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_limit_window_seconds: int = env_field(900, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    signup_rate_limit: int = env_field(3, "SIGNUP_RATE_LIMIT")
    signup_rate_limit_window_seconds: int = env_field(3600, "SIGNUP_RATE_LIMIT_WINDOW_SECONDS")
    reset_rate_limit: int = env_field(
        3,
        "RESET_RATE_LIMIT",
        description="Also applied, as a separate bucket, to verification resends",
    )
    reset_rate_limit_window_seconds: int = env_field(3600, "RESET_RATE_LIMIT_WINDOW_SECONDS")

    # Bounded retries for uniqueness races
    referral_code_max_attempts: int = env_field(10, "REFERRAL_CODE_MAX_ATTEMPTS")
    account_create_max_attempts: int = env_field(5, "ACCOUNT_CREATE_MAX_ATTEMPTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "session_ttl_days",
        "verification_token_ttl_hours",
        "reset_token_ttl_minutes",
        "login_max_failures",
        "login_window_minutes",
        "login_lock_minutes",
        "login_attempt_retention_hours",
        "referral_code_max_attempts",
        "account_create_max_attempts",
        "telegram_auth_max_age_seconds",
        "oauth_state_ttl_seconds",
        "login_rate_limit_window_seconds",
        "signup_rate_limit_window_seconds",
        "reset_rate_limit_window_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("login_rate_limit", "signup_rate_limit", "reset_rate_limit")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be zero or a positive integer")
        return value

    @property
    def allowed_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    def oauth_callback_url(self, provider: str) -> str:
        base = self.oauth_redirect_uri or f"{self.app_base_url.rstrip('/')}/v1/auth/oauth"
        return f"{base.rstrip('/')}/{provider}/callback"


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
