"""Configuration for the order execution worker service."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from libs.db.db import get_database_url


class Settings(BaseSettings):
    """Runtime configuration loaded from the environment."""

    model_config = SettingsConfigDict(env_prefix="ORDER_WORKER_", case_sensitive=False)

    database_url: str = Field(
        default_factory=get_database_url, description="SQLAlchemy URL of the trading database"
    )
    lock_backend: str = Field(
        "auto",
        description="Per-order lock backend (auto|postgres|redis|local)",
        pattern="^(auto|postgres|redis|local)$",
    )
    redis_url: str = Field("redis://localhost:6379/0", description="Redis URL for the redis lock")
    lock_ttl_ms: int = Field(30_000, gt=0, description="Expiry of redis lock keys")
    batch_limit: int = Field(50, ge=1, le=200, description="Orders claimed per loop iteration")
    cron_limit: int = Field(25, ge=1, le=200, description="Default limit for the cron endpoint")
    max_age_ms: int = Field(0, ge=0, description="Skip orders younger than this age")
    interval_ms: int = Field(750, ge=0, description="Sleep between loop iterations")
    execution_max_attempts: int = Field(
        3, ge=1, le=10, description="Attempts per order when the database reports a transient conflict"
    )
    retry_backoff_ms: int = Field(100, ge=0, description="Initial backoff between execution attempts")
    enabled_cache_ttl_seconds: float = Field(
        5.0, ge=0, description="Cache lifetime of the kill-switch flag"
    )
    quote_max_age_ms: int = Field(
        0, ge=0, description="Quotes older than this are ignored (0 disables the check)"
    )
    heartbeat_ttl_ms: int = Field(120_000, gt=0, description="Heartbeat age considered healthy")
    cron_secret: str = Field("", description="Bearer token required by the cron endpoint", repr=False)
    notification_url: str = Field(
        "", description="Base URL of the notification service; empty disables delivery"
    )
    notification_channel: str = Field(
        "webhook", description="Delivery channel requested from the notification service"
    )
    notification_webhook_url: str = Field("", description="Webhook used by webhook-style channels")
    notification_email_to: str = Field("", description="Recipient used by the email channel")
    notification_timeout: float = Field(5.0, gt=0)
    log_level: str = Field("INFO")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid re-parsing environment variables."""

    return Settings()


__all__ = ["Settings", "get_settings"]
