"""
Application Configuration
Centralized, validated settings for the booking core (Pydantic Settings)
"""
import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings
from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class BookingSettings(BaseSettings):
    """Validated environment configuration."""

    ENVIRONMENT: str = "development"

    # Storage
    LEDGER_BACKEND: Literal["postgres", "memory"] = "postgres"
    DATABASE_URL: Optional[str] = None
    LEDGER_SCHEMA: str = "healthcare"
    # No repeatable_read: its snapshot is taken before the timeline lock is granted
    LEDGER_ISOLATION: Literal["serializable", "read_committed"] = "read_committed"
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_COMMAND_TIMEOUT: float = 10.0

    # Specialist directory
    DIRECTORY_BACKEND: Literal["supabase", "memory"] = "supabase"
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    SUPABASE_ANON_KEY: Optional[str] = None

    # Assignment tracker
    TRACKER_BACKEND: Literal["redis", "memory"] = "redis"
    REDIS_URL: str = "redis://localhost:6379"

    # Holds
    HOLD_TTL_SECONDS: int = 60
    HOLD_MAX_LIFETIME_SECONDS: int = 600
    MAX_BOOKING_DURATION_MINUTES: int = 480
    DEFAULT_CURRENCY: str = "USD"

    # Transient storage failures
    TRANSIENT_RETRY_ATTEMPTS: int = 3
    TRANSIENT_RETRY_BASE_DELAY: float = 0.05
    TRANSIENT_RETRY_MAX_DELAY: float = 1.0

    # Expiry sweeper
    SWEEPER_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 5
    SWEEP_BATCH_SIZE: int = 500
    TERMINAL_HOLD_RETENTION_DAYS: int = 7

    # Instant match
    MATCH_MAX_ATTEMPTS: int = 3
    MATCH_LANGUAGE_FALLBACK: bool = True
    MATCH_ADJACENT_OFFSET_HOURS: float = 1.0
    INSTANT_CONSULT_DURATION_MINUTES: int = 15
    INSTANT_LEAD_SECONDS: int = 60
    INSTANT_HORIZON_MINUTES: int = 30
    INFLIGHT_ASSIGNMENT_TTL_SECONDS: int = 1800

    # Video session collaborator
    VIDEO_SESSION_WEBHOOK_URL: Optional[str] = None
    VIDEO_SESSION_TIMEOUT_SECONDS: float = 5.0

    @field_validator("HOLD_TTL_SECONDS", "SWEEP_INTERVAL_SECONDS", "TRANSIENT_RETRY_ATTEMPTS", "MATCH_MAX_ATTEMPTS")
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("HOLD_MAX_LIFETIME_SECONDS")
    @classmethod
    def validate_max_lifetime(cls, v: int, info) -> int:
        ttl = info.data.get("HOLD_TTL_SECONDS", 60)
        if v < ttl:
            raise ValueError("HOLD_MAX_LIFETIME_SECONDS cannot be shorter than HOLD_TTL_SECONDS")
        return v

    @field_validator("REDIS_URL")
    @classmethod
    def validate_redis_not_localhost_in_prod(cls, v: str, info) -> str:
        """Ensure Redis is not localhost in production."""
        env = info.data.get("ENVIRONMENT", "development")
        if "localhost" in v and env == "production":
            raise ValueError("REDIS_URL cannot point to localhost in production")
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def supabase_key(self) -> Optional[str]:
        return self.SUPABASE_SERVICE_ROLE_KEY or self.SUPABASE_ANON_KEY


@lru_cache()
def get_settings() -> BookingSettings:
    """Get cached settings instance"""
    settings = BookingSettings()
    logger.info(
        f"Booking settings loaded: ledger={settings.LEDGER_BACKEND}, "
        f"directory={settings.DIRECTORY_BACKEND}, tracker={settings.TRACKER_BACKEND}, "
        f"hold_ttl={settings.HOLD_TTL_SECONDS}s"
    )
    return settings


def get_redis_client(settings: Optional[BookingSettings] = None) -> Redis:
    """
    Get configured Redis client with optimized settings

    Returns:
        Redis: Configured asyncio Redis client instance
    """
    settings = settings or get_settings()
    return Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,  # Automatically decode responses to strings
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30
    )
