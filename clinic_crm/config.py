"""Configuration management for the clinic CRM."""

from datetime import date
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/clinic_crm.db",
        description="Async SQLAlchemy URL for the appointment/patient store",
    )

    # Clinic
    clinic_timezone: str = Field(
        default="UTC",
        description="IANA zone used for milestone slot hours and calendar days",
    )

    # Scheduling
    hold_ttl_hours: int = Field(default=24, description="Lifetime of a HOLD booking")
    hold_expiry_frees_slot: bool = Field(
        default=True,
        description="Treat holds past holdExpiresAt as free for conflict checks",
    )
    conflict_window_margin_hours: int = Field(
        default=24,
        description="Look-around margin added on both sides of a candidate booking",
    )
    min_appointment_minutes: int = Field(default=15, ge=1)

    # Calendar view cache
    calendar_cache_ttl_seconds: float = Field(
        default=5.0,
        description="Upper bound on how stale a cached grid may be (writes from other processes); 0 disables",
    )
    calendar_cache_max_entries: int = Field(default=256, ge=0)

    # Placeholder milestones
    placeholder_milestones_enabled: bool = Field(default=True)
    placeholder_base_date: date = Field(default=date(2025, 8, 1))

    # Store retries (StoreError only)
    store_retry_attempts: int = Field(default=3, ge=1)
    store_retry_backoff_seconds: float = Field(default=0.2, ge=0)
    store_retry_max_backoff_seconds: float = Field(default=5.0, ge=0)

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    cors_origins: list[str] = Field(
        default=["http://localhost:5173", "http://localhost:3000"],
        description="Allowed CORS origins",
    )

    # Debug
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode (exposes error details in responses)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
