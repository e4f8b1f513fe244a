from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from framesense.logging import get_logger

logger = get_logger(__name__)

# HS256 key floor, in characters
MIN_JWT_SECRET_LENGTH = 32


class Tier(str, Enum):
    """Subscription tiers, ordered from least to most capable."""

    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)


TIER_ORDER: tuple[Tier, ...] = (Tier.FREE, Tier.PREMIUM, Tier.PRO, Tier.ENTERPRISE)


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELLED = "cancelled"


DEFAULT_PRICE_TIERS: dict[str, Tier] = {
    "price_premium_monthly": Tier.PREMIUM,
    "price_premium_yearly": Tier.PREMIUM,
    "price_pro_monthly": Tier.PRO,
    "price_pro_yearly": Tier.PRO,
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account core.

    Constructed once at startup and handed to the services that need it;
    nothing reads these values from module globals.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/framesense", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests.",
    )
    insecure_dev_mode: bool = env_field(
        False,
        "INSECURE_DEV_MODE",
        description=(
            "Generate a throwaway per-process JWT secret when JWT_SECRET is unset "
            "and accept unsigned billing webhooks when no webhook secret is set."
        ),
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("framesense", "JWT_ISSUER")
    jwt_audience: str = env_field("framesense-clients", "JWT_AUDIENCE")
    session_ttl_days: int = env_field(
        30,
        "SESSION_TTL_DAYS",
        description="Lifetime of both the bearer token and its session row.",
        ge=1,
    )
    password_min_length: int = env_field(
        6,
        "PASSWORD_MIN_LENGTH",
        description="Minimum password length accepted at registration and password change.",
        ge=1,
    )
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", description="argon2 memory cost in KiB", ge=8
    )
    default_tier: Tier = env_field(
        Tier.PREMIUM,
        "DEFAULT_TIER",
        description="Tier assigned to newly registered accounts.",
    )
    default_subscription_status: SubscriptionStatus = env_field(
        SubscriptionStatus.ACTIVE, "DEFAULT_SUBSCRIPTION_STATUS"
    )
    billing_price_tiers: dict[str, Tier] = env_field(
        DEFAULT_PRICE_TIERS,
        "BILLING_PRICE_TIERS",
        description="JSON object mapping payment-processor price ids to tiers.",
    )
    billing_webhook_secret: str | None = env_field(None, "BILLING_WEBHOOK_SECRET")
    billing_webhook_tolerance_seconds: int = env_field(
        300, "BILLING_WEBHOOK_TOLERANCE_SECONDS"
    )
    maintenance_interval_seconds: int = env_field(
        3600,
        "MAINTENANCE_INTERVAL_SECONDS",
        description="How often the app sweeps expired sessions and rolls daily usage; 0 disables.",
    )
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

    @field_validator("billing_price_tiers", mode="before")
    @classmethod
    def _parse_price_tiers(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("BILLING_PRICE_TIERS must be a JSON object") from exc
        if not isinstance(value, dict):
            raise ValueError("BILLING_PRICE_TIERS must be a JSON object")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return self
        if not self.insecure_dev_mode:
            raise ValueError(
                "JWT_SECRET is not set; refusing to start. "
                "Set JWT_SECRET or INSECURE_DEV_MODE=true for local development."
            )
        logger.warning(
            "insecure_dev_mode_enabled",
            message="JWT_SECRET unset; using a random per-process secret. Tokens will not survive a restart.",
        )
        self.jwt_secret = secrets.token_urlsafe(64)
        return self


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
