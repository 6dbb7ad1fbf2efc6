"""
config.py

Centralized configuration for the Care-Plan engine using Pydantic Settings.
Values are read from CAREPLAN_* environment variables or a .env file.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CarePlanSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CAREPLAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = False

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Plan lifecycle
    history_limit: int = Field(default=10, ge=1)
    legacy_plan_id: str = "p1"
    save_message_ttl_seconds: int = Field(default=3, ge=0)

    # Validation
    assessment_gap_warning_days: int = Field(default=30, ge=0)

    # Deadlines
    certification_critical_days: int = Field(default=30, ge=0)
    certification_warning_days: int = Field(default=60, ge=0)

    # Dashboard
    dashboard_monitoring_fetch_limit: int = Field(default=5, ge=1)
    dashboard_max_concurrency: int = Field(default=8, ge=1)


@lru_cache
def get_settings() -> CarePlanSettings:
    """Get cached application settings."""
    return CarePlanSettings()
