"""Thin CLI wrapper for docker_ssh_build.

This module provides the command-line interface using Typer.
All pipeline logic is delegated to docker_ssh_build.pipeline.
"""

import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from docker_ssh_build import __version__
from docker_ssh_build.cancel import CancellationContext
from docker_ssh_build.config import BuildConfig, get_settings
from docker_ssh_build.pipeline import run_pipeline

app = typer.Typer(
    name="docker-ssh-build",
    help="Build a Docker image on a remote host over SSH and load it locally",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"docker-ssh-build version {__version__}")
        raise typer.Exit()


def require_value(value: str) -> str:
    """Reject empty option values."""
    if not value.strip():
        raise typer.BadParameter("must not be empty")
    return value


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


@app.command()
def main(
    host: Annotated[
        str,
        typer.Option(
            "--host", "-H", help="SSH host to build on", callback=require_value
        ),
    ],
    tag: Annotated[
        str,
        typer.Option("--tag", "-t", help="Image tag", callback=require_value),
    ],
    serve_port: Annotated[
        int | None,
        typer.Option(
            "--serve-port",
            min=1,
            max=65535,
            help="Local port of the build context server",
        ),
    ] = None,
    remote_port: Annotated[
        int | None,
        typer.Option(
            "--remote-port",
            min=1,
            max=65535,
            help="Port forwarded from the build host to the context server",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (DEBUG, INFO, ...)"),
    ] = None,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Build the current directory on HOST as TAG and load the image locally."""
    overrides: dict[str, object] = {}
    if serve_port is not None:
        overrides["serve_port"] = serve_port
    if remote_port is not None:
        overrides["remote_port"] = remote_port
    if log_level is not None:
        level = log_level.upper()
        if level not in LOG_LEVELS:
            raise typer.BadParameter(
                f"unknown level {log_level}", param_hint="--log-level"
            )
        overrides["log_level"] = level

    settings = get_settings().model_copy(update=overrides)
    config = BuildConfig(host=host, tag=tag, settings=settings)
    configure_logging(settings.log_level)

    with CancellationContext() as cancellation, cancellation.handle_signals():
        result = run_pipeline(config, cancellation=cancellation, console=console)

    if not result.success:
        message = escape(result.error_message or "unknown error")
        err_console.print(f"[red]Failed: {message}[/red]", highlight=False)
        raise typer.Exit(code=int(result.exit_code))

    console.print(
        f"[green]Loaded image {escape(tag)} built on {escape(host)}[/green]",
        highlight=False,
    )
