from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_TRUTHY = {"1", "true", "yes", "on"}
DEFAULT_CORS_ORIGINS = ("http://localhost:8000", "http://127.0.0.1:8000")


class HrisSettings(BaseSettings):
    """Centralized application configuration pulled from environment/.env."""

    secret_key: str = Field("dev-secret", alias="SECRET_KEY")
    # Empty ADMIN_PASSWORD keeps the app bootable; superadmin login always fails.
    admin_password: str = Field("", alias="ADMIN_PASSWORD")
    database_url: Optional[str] = Field(None, alias="DATABASE_URL")
    auto_apply_ddl: bool = Field(True, alias="HRIS_AUTO_APPLY_DDL")
    enforce_alembic_migrations: bool = Field(False, alias="HRIS_ENFORCE_ALEMBIC")
    user_token_ttl: int = Field(60 * 60 * 12, alias="USER_TOKEN_TTL")
    # Payroll
    payroll_timezone: str = Field("Asia/Manila", alias="PAYROLL_TIMEZONE")
    night_diff_rate: Decimal = Field(Decimal("0.10"), alias="NIGHT_DIFF_RATE")
    # Material requests
    material_request_max_retries: int = Field(3, alias="MATERIAL_REQUEST_MAX_RETRIES")
    serve_quantity_tolerance: Decimal = Field(Decimal("0.0005"), alias="SERVE_QUANTITY_TOLERANCE")
    # HTTP and observability
    cors_allow_origins: str = Field("", alias="CORS_ALLOW_ORIGINS")
    json_logs: bool = Field(False, alias="JSON_LOGS")
    sentry_dsn: Optional[str] = Field(None, alias="SENTRY_DSN")
    # Build/meta info
    app_version: str = Field("dev", alias="APP_VERSION")
    git_sha: Optional[str] = Field(None, alias="GIT_SHA")
    build_ts: Optional[str] = Field(None, alias="BUILD_TS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("secret_key", mode="before")
    @classmethod
    def _normalize_secret(cls, value: str | None) -> str:
        val = (value or "dev-secret").strip()
        return val or "dev-secret"

    @field_validator("admin_password", mode="before")
    @classmethod
    def _validate_admin_password(cls, value: str | None) -> str:
        return (value or "").strip()

    @field_validator("database_url", mode="before")
    @classmethod
    def _strip_database_url(cls, value: str | None) -> Optional[str]:
        return value.strip() if isinstance(value, str) else value

    @field_validator("auto_apply_ddl", mode="before")
    @classmethod
    def _parse_bool(cls, value) -> bool:
        if isinstance(value, bool):
            return value
        if value is None or value == "":
            return True
        return str(value).strip().lower() in _TRUTHY

    @field_validator("enforce_alembic_migrations", "json_logs", mode="before")
    @classmethod
    def _parse_enforce(cls, value) -> bool:
        if isinstance(value, bool):
            return value
        if value is None or value == "":
            return False
        return str(value).strip().lower() in _TRUTHY

    @field_validator("material_request_max_retries", mode="before")
    @classmethod
    def _clamp_retries(cls, value) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return 3
        return max(1, parsed)


@lru_cache(maxsize=1)
def get_settings() -> HrisSettings:
    return HrisSettings()


def reset_settings_cache() -> None:
    """Testing helper to clear cached settings."""
    get_settings.cache_clear()


def cors_origins(settings: Optional[HrisSettings] = None) -> list[str]:
    raw = (settings or get_settings()).cors_allow_origins or ""
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or list(DEFAULT_CORS_ORIGINS)
