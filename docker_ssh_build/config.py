"""Configuration settings for docker_ssh_build.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
No configuration file is read.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the
    DOCKER_SSH_BUILD_ prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCKER_SSH_BUILD_",
        extra="ignore",
    )

    # Scratch directory
    tmp_dir: Path | None = Field(
        default=None,
        description="Root for scratch directories (uses system default if not set)",
    )
    scratch_prefix: str = Field(
        default="docker-ssh-build-",
        min_length=1,
        description="Name prefix of the per-run scratch directory",
    )

    # Network
    serve_host: str = Field(
        default="127.0.0.1",
        description="Local address the build context server binds to",
    )
    serve_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Local port the build context server binds to",
    )
    remote_port: int = Field(
        default=50218,
        ge=1,
        le=65535,
        description="Port on the build host forwarded back to the context server",
    )

    # External tools
    ssh_command: str = Field(default="ssh", description="SSH client executable")
    tar_command: str = Field(default="tar", description="Archiver executable")
    docker_command: str = Field(
        default="docker",
        description="Local container engine executable",
    )
    remote_docker_command: str = Field(
        default="docker",
        description=(
            "Container engine command on the build host, split into words"
            " (e.g. \"sudo docker\")"
        ),
    )

    # Timeouts (in seconds)
    server_ready_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout waiting for the context server to become reachable",
    )
    terminate_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Grace period before a cancelled command is killed",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


class BuildConfig(BaseModel):
    """Immutable configuration of one remote build run.

    Attributes:
        host: SSH destination of the build host.
        tag: Image tag used for build, save and load.
        settings: Effective settings for the run.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    tag: str = Field(min_length=1)
    settings: Settings = Field(default_factory=Settings)


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


__all__ = ["BuildConfig", "Settings", "get_settings"]
