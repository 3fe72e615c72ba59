"""Configuration settings for vmtest_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

The CI environment names (TARGET_ARCH, PROJECT_NAME, GITHUB_WORKSPACE, ...)
are accepted as aliases so the tool drops into existing workflows unchanged.
"""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the VMTEST_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="VMTEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Artifact index
    index_location: str = Field(
        default="INDEX",
        validation_alias=AliasChoices("VMTEST_INDEX_LOCATION", "VMTEST_INDEX"),
        description="Path or http(s) URL of the name<TAB>url artifact index",
    )

    # Paths
    workspace: Path = Field(
        default_factory=Path.cwd,
        validation_alias=AliasChoices("VMTEST_WORKSPACE", "GITHUB_WORKSPACE"),
        description="Directory receiving the extracted vmlinuz for the boot stage",
    )
    repo_root: Path = Field(
        default_factory=Path.cwd,
        validation_alias=AliasChoices("VMTEST_REPO_ROOT", "REPO_ROOT"),
        description="Root of the source tree copied into the guest",
    )
    cache_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory for downloaded and cached artifacts",
    )

    # Target
    target_arch: str = Field(
        default="x86_64",
        validation_alias=AliasChoices("VMTEST_TARGET_ARCH", "TARGET_ARCH"),
        description="Architecture used to select artifacts",
    )
    project_name: str = Field(
        default="libbpf",
        validation_alias=AliasChoices("VMTEST_PROJECT_NAME", "PROJECT_NAME"),
        description="Project name namespacing rootfs artifacts and guest paths",
    )

    # Operational modes
    source_fullcopy: bool = Field(
        default=False,
        validation_alias=AliasChoices("VMTEST_SOURCE_FULLCOPY", "SOURCE_FULLCOPY"),
        description="Copy every git-tracked file instead of the curated subset",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    guestfish: str = Field(
        default="guestfish",
        description="guestfish executable used for image sessions",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for artifact downloads",
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
