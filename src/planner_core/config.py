"""Application configuration.

Settings are read from environment variables prefixed with ``PLANNER_``.
"""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Planner core settings."""

    model_config = SettingsConfigDict(
        env_prefix="PLANNER_",
        env_file=None,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite:///./planner.db")
    database_echo: bool = Field(default=False)
    # When False, delete_subtree collects descendants itself instead of
    # relying on ON DELETE CASCADE.
    native_cascade: bool = Field(default=True)

    # Decision requests
    decision_max_options: int = Field(default=10, ge=1, le=50)
    decision_metadata_max_bytes: int = Field(default=10240, ge=256)

    # Listing
    default_page_size: int = Field(default=50, ge=1, le=100)
    max_page_size: int = Field(default=100, ge=1, le=500)

    # API
    log_level: str = Field(default="INFO")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()
