"""Application configuration loaded from environment variables / .env file."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration. Every field can be overridden with MEMBERSHIP_<NAME>."""

    model_config = SettingsConfigDict(
        env_prefix="MEMBERSHIP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # SQLite locally, PostgreSQL in production
    database_url: str = "sqlite:///./membership.db"

    # Membership lifecycle
    cooldown_hours: int = 24
    reason_max_length: int = 500
    form_field_max_length: int = 1000

    # Presence
    presence_active_window_seconds: int = 120
    presence_retention_seconds: int = 300
    presence_eviction_probability: float = 0.2

    log_level: str = "INFO"


settings = Settings()
