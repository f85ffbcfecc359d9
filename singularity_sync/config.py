"""Configuration settings for singularity_sync.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from singularity_sync.types import AbortPolicy


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SINGULARITY_SYNC_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SINGULARITY_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Build tool
    build_tool: str = Field(
        default="singularity",
        min_length=1,
        description="Container build executable (singularity or apptainer)",
    )
    artifact_extension: str = Field(
        default="sif",
        pattern=r"^[A-Za-z0-9]+$",
        description="File extension of built images",
    )
    source_scheme: str = Field(
        default="docker",
        pattern=r"^[a-z][a-z0-9+.-]*$",
        description="URI scheme of the source registry",
    )

    # Paths
    log_dir: Path | None = Field(
        default=None,
        description="Directory for per-image build logs (captured in memory if not set)",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    abort_policy: AbortPolicy = Field(
        default=AbortPolicy.CONTINUE_ON_FAILURE,
        description="Whether a failed image stops the remaining builds",
    )
    force: bool = Field(
        default=False,
        description="Rebuild images whose artifact already exists",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=1,
        ge=1,
        le=32,
        description="Maximum concurrent builds (1 = sequential)",
    )

    # Timeouts (in seconds)
    manifest_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for fetching a manifest over HTTP",
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
