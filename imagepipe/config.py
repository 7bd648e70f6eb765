"""Configuration settings for imagepipe.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default dependency layer cache directory."""
    return Path.home() / ".cache" / "imagepipe"


def _default_work_dir() -> Path:
    """Return the default directory for per-build working trees."""
    return Path.home() / ".local" / "share" / "imagepipe" / "builds"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "imagepipe" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the IMAGEPIPE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="IMAGEPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the dependency layer cache",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for build working trees, logs and manifests",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    variants_file: Path | None = Field(
        default=None,
        description="Optional YAML/JSON file with additional build variants",
    )

    # Container engine
    container_engine: Literal["docker", "podman"] = Field(
        default="docker",
        description="Container engine CLI used for toolchain, build and runtime steps",
    )
    image_repository: str = Field(
        default="imagepipe/service",
        description="Repository name used when tagging runtime images",
    )
    run_as_host_user: bool = Field(
        default=True,
        description="Run cargo containers as the host uid:gid",
    )

    # Service image
    binary_name: str | None = Field(
        default=None,
        description="Service binary name (derived from Cargo.toml if not set)",
    )
    exposed_port: int = Field(
        default=50051,
        ge=1,
        le=65535,
        description="Port advertised by the runtime image",
    )
    timezone: str = Field(
        default="Asia/Tokyo",
        description="Timezone identifier pinned in the runtime image",
    )
    source_excludes: list[str] = Field(
        default_factory=list,
        description="Extra top-level names excluded when copying the source tree",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    keep_work_dir: bool = Field(
        default=False,
        description="Keep copied source and target trees after a build",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Maximum variants built concurrently in a matrix run",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single pipeline step",
    )
    lock_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout waiting for another build of the same dependency layer",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

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
