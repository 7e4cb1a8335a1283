"""Pipeline stages for a remote build.

This module handles:
- Packaging the build context (relayed archiver run)
- Building the image on the remote host through a reverse tunnel (relayed)
- Streaming the saved image into a local file (not relayed; binary output)
- Loading the image into the local engine (relayed)

Every external command is echoed before it runs.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console

from docker_ssh_build.cancel import CancellationContext
from docker_ssh_build.config import BuildConfig
from docker_ssh_build.pipeline.commands import (
    CONTEXT_BUNDLE_NAME,
    IMAGE_ARCHIVE_NAME,
    compose_archive_command,
    compose_load_command,
    compose_save_command,
    compose_tunnel_build_command,
    format_command,
)
from docker_ssh_build.relay import LocalTerminal, run_relayed, wait_for_exit

logger = logging.getLogger(__name__)


class StageError(Exception):
    """Raised when a pipeline stage fails.

    Attributes:
        stage: Name of the failed stage.
        command: The command that was attempted, for manual re-runs.
        exit_code: Exit code of the command, if it ran.
        code: Stable error code.
    """

    def __init__(
        self,
        message: str,
        stage: str,
        command: str | None = None,
        exit_code: int | None = None,
        code: str = "stage_failed",
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.command = command
        self.exit_code = exit_code
        self.code = code


@dataclass
class StageContext:
    """Collaborators shared by all stages of one run."""

    config: BuildConfig
    terminal: LocalTerminal
    cancellation: CancellationContext
    console: Console = field(default_factory=Console)

    def echo(self, text: str) -> None:
        """Show a command that is about to run."""
        self.console.print(
            f"$ {text}", style="cyan", markup=False, highlight=False, soft_wrap=True
        )


def _run_relayed_stage(ctx: StageContext, stage: str, cmd: Sequence[str]) -> None:
    cmd_str = format_command(cmd)
    ctx.echo(cmd_str)
    result = run_relayed(
        cmd,
        terminal=ctx.terminal,
        cancellation=ctx.cancellation,
        terminate_timeout=ctx.config.settings.terminate_timeout,
    )
    if not result.success:
        raise StageError(
            f"{stage} failed with exit code {result.exit_code}: {cmd_str}",
            stage=stage,
            command=cmd_str,
            exit_code=result.exit_code,
        )
    logger.debug("%s succeeded", stage)


def create_context_bundle(ctx: StageContext, scratch_dir: Path) -> Path:
    """Archive the current directory into the scratch directory.

    Returns:
        Path to the build context bundle.

    Raises:
        StageError: If the archiver fails or produced no bundle.
    """
    bundle_path = scratch_dir / CONTEXT_BUNDLE_NAME
    cmd = compose_archive_command(ctx.config.settings, bundle_path)
    _run_relayed_stage(ctx, "archive", cmd)

    if not bundle_path.is_file():
        raise StageError(
            f"Archiver exited successfully but {bundle_path} was not created",
            stage="archive",
            command=format_command(cmd),
            code="bundle_missing",
        )
    logger.info(
        "Packaged build context: %s (%d bytes)", bundle_path, bundle_path.stat().st_size
    )
    return bundle_path


def build_remotely(ctx: StageContext) -> None:
    """Build the image on the remote host from the published bundle."""
    _run_relayed_stage(ctx, "remote build", compose_tunnel_build_command(ctx.config))


def transfer_image(ctx: StageContext, scratch_dir: Path) -> Path:
    """Stream the remotely built image into a local archive file.

    Output is binary, so the command is not relayed: stdout goes straight
    to the file and stderr is inherited from this process.

    Returns:
        Path to the image archive.

    Raises:
        StageError: If the command cannot be started, fails, or the file is
            missing afterwards.
    """
    settings = ctx.config.settings
    image_path = scratch_dir / IMAGE_ARCHIVE_NAME
    cmd = compose_save_command(ctx.config)
    cmd_str = format_command(cmd)
    ctx.echo(f"{cmd_str} > {image_path}")

    try:
        with image_path.open("wb") as image_file:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=image_file,
            )
            exit_code = wait_for_exit(
                proc, ctx.cancellation, settings.terminate_timeout
            )
            image_file.flush()
            os.fsync(image_file.fileno())
    except OSError as e:
        raise StageError(
            f"Failed to transfer image: {e}",
            stage="transfer",
            command=cmd_str,
            code="execution_error",
        ) from e

    if exit_code != 0:
        raise StageError(
            f"transfer failed with exit code {exit_code}: {cmd_str}",
            stage="transfer",
            command=cmd_str,
            exit_code=exit_code,
        )
    if not image_path.is_file():
        raise StageError(
            f"Image archive {image_path} was not created",
            stage="transfer",
            command=cmd_str,
            code="image_missing",
        )

    logger.info(
        "Transferred image %s: %s (%d bytes)",
        ctx.config.tag,
        image_path,
        image_path.stat().st_size,
    )
    return image_path


def import_image(ctx: StageContext, image_path: Path) -> None:
    """Load the transferred image archive into the local engine."""
    _run_relayed_stage(
        ctx, "import", compose_load_command(ctx.config.settings, image_path)
    )


__all__ = [
    "StageContext",
    "StageError",
    "build_remotely",
    "create_context_bundle",
    "import_image",
    "transfer_image",
]
