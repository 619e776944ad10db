"""
RxCare Configuration Module

Centralized configuration management using Pydantic Settings.
Supports environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="RXCARE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    env: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_json: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000


class StoreSettings(BaseSettings):
    """Document store selection."""

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        env_file=".env",
        extra="ignore",
    )

    backend: Literal["memory", "postgres"] = "memory"
    connect_attempts: int = 3


class PostgresSettings(BaseSettings):
    """PostgreSQL settings for the JSONB document store."""

    model_config = SettingsConfigDict(
        env_prefix="POSTGRES_",
        env_file=".env",
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 5432
    user: str = "rxcare"
    password: SecretStr = Field(default=SecretStr("rxcare_dev_password"))
    database: str = "rxcare"
    min_pool_size: int = 2
    max_pool_size: int = 10

    @property
    def connection_url(self) -> str:
        """Get the PostgreSQL connection URL."""
        pwd = self.password.get_secret_value()
        return f"postgresql://{self.user}:{pwd}@{self.host}:{self.port}/{self.database}"


class InterventionSettings(BaseSettings):
    """Clinical intervention workflow settings."""

    model_config = SettingsConfigDict(
        env_prefix="INTERVENTION_",
        env_file=".env",
        extra="ignore",
    )

    duplicate_window_days: int = 30
    default_page_size: int = 20
    max_page_size: int = 50
    recent_list_size: int = 5
    number_allocation_attempts: int = 5

    # Days an open intervention may run before it is overdue
    overdue_days_critical: int = 1
    overdue_days_high: int = 1
    overdue_days_medium: int = 3
    overdue_days_low: int = 7

    # Active assignments older than this are overdue
    assignment_overdue_days: int = 7

    def overdue_thresholds(self) -> dict[str, int]:
        """Days allowed per priority value before an open intervention is overdue."""
        return {
            "critical": self.overdue_days_critical,
            "high": self.overdue_days_high,
            "medium": self.overdue_days_medium,
            "low": self.overdue_days_low,
        }


class NotificationSettings(BaseSettings):
    """Notification delivery settings."""

    model_config = SettingsConfigDict(
        env_prefix="NOTIFY_",
        env_file=".env",
        extra="ignore",
    )

    base_retry_delay_seconds: float = 60.0
    max_attempts: int = 3
    max_attempts_urgent: int = 5
    retry_window_hours: int = 24

    sms_gateway_url: str | None = None
    sms_gateway_token: SecretStr | None = None
    email_from_address: str = "interventions@rxcare.health"


class Settings:
    """
    Aggregated settings container.

    Usage:
        from rxcare.config import get_settings
        settings = get_settings()
        print(settings.app.api_port)
        print(settings.postgres.connection_url)
    """

    def __init__(self):
        self.app = AppSettings()
        self.store = StoreSettings()
        self.postgres = PostgresSettings()
        self.interventions = InterventionSettings()
        self.notifications = NotificationSettings()

    @property
    def is_development(self) -> bool:
        return self.app.env == "development"

    @property
    def is_production(self) -> bool:
        return self.app.env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings
    """
    return Settings()
