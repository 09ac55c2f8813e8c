# backend/fleet_scheduler/core/config.py
import logging
import os
from typing import Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


_VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment environment name")
    log_level: str = Field(default="INFO", description="Root log level")

    # Storage
    database_url: str = Field(
        default="sqlite:///./fleet_scheduler.db",
        description="SQLAlchemy URL for the reservation store",
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL used for cross-process vehicle locks",
    )

    # Per-vehicle locking
    distributed_locks_enabled: bool = Field(
        default=False,
        description="Also take a Redis mutex per vehicle (multi-instance deployments)",
    )
    lock_namespace: str = Field(default="fleet", description="Prefix for Redis lock keys")
    vehicle_lock_ttl_seconds: int = Field(
        default=30, description="Expiry of the Redis vehicle mutex"
    )
    vehicle_lock_wait_seconds: float = Field(
        default=10.0, description="How long an operation waits for a vehicle lock"
    )
    vehicle_lock_poll_interval_seconds: float = Field(
        default=0.05, description="Polling interval while waiting for the Redis mutex"
    )

    # Scheduling rules
    start_grace_minutes: int = Field(
        default=30, description="How early an approved booking may be started"
    )
    max_booking_hours: int = Field(default=72, description="Longest bookable interval")
    index_refresh_on_lock: bool = Field(
        default=False,
        description=(
            "Reload a vehicle's availability entries from the repository every time its "
            "lock is taken. Required when several processes share one repository."
        ),
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = (value or "INFO").strip().upper()
        if normalized not in _VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level: {value}")
        return normalized

    @field_validator(
        "vehicle_lock_ttl_seconds",
        "vehicle_lock_wait_seconds",
        "vehicle_lock_poll_interval_seconds",
        "max_booking_hours",
    )
    @classmethod
    def _require_positive(cls, value: float, info: ValidationInfo) -> float:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("start_grace_minutes")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        # Zero means trips may not start before their window
        if value < 0:
            raise ValueError("start_grace_minutes must not be negative")
        return value

    @field_validator("distributed_locks_enabled")
    @classmethod
    def _warn_without_redis(cls, value: bool, info: ValidationInfo) -> bool:
        if value and not info.data.get("redis_url"):
            logger.warning(
                "DISTRIBUTED_LOCKS_ENABLED is set without REDIS_URL; "
                "vehicle locks will fail open to process-local locking"
            )
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}


settings = Settings()
