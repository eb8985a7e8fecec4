"""Configuration settings for stagebuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default dependency cache directory."""
    return Path.home() / ".cache" / "stagebuild"


def _default_output_dir() -> Path:
    """Return the default runtime image output directory."""
    return Path.home() / ".local" / "share" / "stagebuild" / "images"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "stagebuild" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STAGEBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGEBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for dependency cache entries and base images",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Root directory for assembled runtime images",
    )
    work_dir: Path | None = Field(
        default=None,
        description="Parent directory for build workspaces (system temp if unset)",
    )
    package_repo: Path | None = Field(
        default=None,
        description="Local package repository used to install runtime libraries",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single compiler pass",
    )
    lock_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout waiting for another run populating the same cache entry",
    )
    download_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for base image downloads",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
