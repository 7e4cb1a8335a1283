"""Command composition for the remote build pipeline.

Commands are returned as lists of strings suitable for subprocess. Arguments
that are executed by the remote shell are quoted, because ssh joins the
remote command into a single command line.
"""

from __future__ import annotations

import shlex
from collections.abc import Sequence
from pathlib import Path

from docker_ssh_build.config import BuildConfig, Settings

CONTEXT_BUNDLE_NAME = "ctx.tar.gz"
IMAGE_ARCHIVE_NAME = "image.tar"

# Address the reverse tunnel listens on, as seen from the build host
REMOTE_TUNNEL_HOST = "127.0.0.1"


def format_command(cmd: Sequence[str]) -> str:
    """Render a command the way a user would type it."""
    return shlex.join(cmd)


def _remote(*args: str) -> list[str]:
    return [shlex.quote(arg) for arg in args]


def _remote_docker(settings: Settings) -> list[str]:
    # May carry a wrapper such as "sudo docker"
    return shlex.split(settings.remote_docker_command)


def compose_archive_command(settings: Settings, bundle_path: Path) -> list[str]:
    """Compose the command packaging the current directory.

    Args:
        settings: Effective settings.
        bundle_path: Destination of the compressed bundle.

    Returns:
        Command as list of strings.
    """
    return [settings.tar_command, "-czf", str(bundle_path), "."]


def context_url(settings: Settings) -> str:
    """Return the URL of the build context as reachable from the build host."""
    return f"http://{REMOTE_TUNNEL_HOST}:{settings.remote_port}/{CONTEXT_BUNDLE_NAME}"


def compose_tunnel_build_command(config: BuildConfig) -> list[str]:
    """Compose the ssh command building the image through a reverse tunnel.

    ExitOnForwardFailure turns a failed tunnel setup into a non-zero exit
    instead of a warning.

    Args:
        config: Build configuration.

    Returns:
        Command as list of strings.
    """
    settings = config.settings
    forward = f"{settings.remote_port}:{settings.serve_host}:{settings.serve_port}"
    return [
        settings.ssh_command,
        "-t",
        "-o",
        "ExitOnForwardFailure=yes",
        "-R",
        forward,
        config.host,
        *_remote(
            *_remote_docker(settings),
            "build",
            "-t",
            config.tag,
            context_url(settings),
        ),
    ]


def compose_save_command(config: BuildConfig) -> list[str]:
    """Compose the ssh command streaming the built image to stdout."""
    settings = config.settings
    return [
        settings.ssh_command,
        config.host,
        *_remote(*_remote_docker(settings), "save", config.tag),
    ]


def compose_load_command(settings: Settings, image_path: Path) -> list[str]:
    """Compose the command loading an image archive into the local engine."""
    return [settings.docker_command, "load", "-i", str(image_path)]


__all__ = [
    "CONTEXT_BUNDLE_NAME",
    "IMAGE_ARCHIVE_NAME",
    "compose_archive_command",
    "compose_load_command",
    "compose_save_command",
    "compose_tunnel_build_command",
    "context_url",
    "format_command",
]
