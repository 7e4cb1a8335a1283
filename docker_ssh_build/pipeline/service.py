"""Remote build pipeline orchestration.

This module sequences the pipeline stages:
1. Package the build context into a fresh scratch directory
2. Serve the scratch directory and wait until the bundle is reachable
3. Build the image remotely through a reverse tunnel
4. Stream the image back into the scratch directory
5. Load the image locally

The scratch directory and the content server are scoped resources released
on every exit path. All failures are mapped to an exit code here.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from docker_ssh_build.cancel import CancellationContext, OperationCancelledError
from docker_ssh_build.config import BuildConfig
from docker_ssh_build.pipeline.commands import CONTEXT_BUNDLE_NAME
from docker_ssh_build.pipeline.server import ContentServer, ContentServerError
from docker_ssh_build.pipeline.stages import (
    StageContext,
    StageError,
    build_remotely,
    create_context_bundle,
    import_image,
    transfer_image,
)
from docker_ssh_build.relay import LocalTerminal, RelayStartupError, TerminalStateError
from docker_ssh_build.types import ExitCode, PipelineState

logger = logging.getLogger(__name__)

# Errors that fail the run; anything else is a bug and propagates
PIPELINE_ERRORS = (
    StageError,
    RelayStartupError,
    TerminalStateError,
    ContentServerError,
    OSError,
)


@dataclass
class PipelineResult:
    """Result of a pipeline run.

    Attributes:
        state: Final state (DONE or ABORTED).
        exit_code: Process exit code for the run.
        scratch_dir: Scratch directory used by the run (removed by now).
        image_path: Where the image archive was written, if it was.
        error_message: Error message if the run was aborted.
    """

    state: PipelineState
    exit_code: ExitCode
    scratch_dir: Path | None = None
    image_path: Path | None = None
    error_message: str | None = None

    @property
    def success(self) -> bool:
        """Whether the pipeline reached DONE."""
        return self.state == PipelineState.DONE


@contextmanager
def scratch_directory(root: Path | None, prefix: str) -> Iterator[Path]:
    """Create a private scratch directory, removed recursively on exit.

    Removal errors are logged and never raised.

    Args:
        root: Parent directory (system temp root if None).
        prefix: Directory name prefix.

    Yields:
        Path to the scratch directory.
    """
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=root))
    logger.debug("Created scratch directory %s", path)
    try:
        yield path
    finally:
        try:
            shutil.rmtree(path)
            logger.debug("Removed scratch directory %s", path)
        except OSError as e:
            logger.warning("Failed to remove scratch directory %s: %s", path, e)


class _Run:
    """Tracks the state machine of a single run."""

    def __init__(self) -> None:
        self.state = PipelineState.INIT
        self.scratch_dir: Path | None = None
        self.image_path: Path | None = None

    def advance(self, state: PipelineState) -> None:
        logger.debug("Pipeline state: %s -> %s", self.state.value, state.value)
        self.state = state


def _execute(run: _Run, ctx: StageContext) -> None:
    settings = ctx.config.settings
    cancellation = ctx.cancellation

    with ExitStack() as stack:
        run.scratch_dir = stack.enter_context(
            scratch_directory(settings.tmp_dir, settings.scratch_prefix)
        )

        cancellation.raise_if_cancelled()
        create_context_bundle(ctx, run.scratch_dir)
        run.advance(PipelineState.CONTEXT_PUBLISHED)

        cancellation.raise_if_cancelled()
        server = stack.enter_context(
            ContentServer(
                run.scratch_dir,
                settings.serve_host,
                settings.serve_port,
                ready_timeout=settings.server_ready_timeout,
                cancellation=cancellation,
                on_failure=lambda error: cancellation.cancel(str(error), error=error),
            )
        )
        server.wait_until_reachable(CONTEXT_BUNDLE_NAME)
        run.advance(PipelineState.SERVING)

        cancellation.raise_if_cancelled()
        build_remotely(ctx)
        run.advance(PipelineState.BUILT)

        cancellation.raise_if_cancelled()
        run.image_path = transfer_image(ctx, run.scratch_dir)
        run.advance(PipelineState.TRANSFERRED)

        cancellation.raise_if_cancelled()
        import_image(ctx, run.image_path)
        run.advance(PipelineState.IMPORTED)


def run_pipeline(
    config: BuildConfig,
    terminal: LocalTerminal | None = None,
    cancellation: CancellationContext | None = None,
    console: Console | None = None,
) -> PipelineResult:
    """Build ``config.tag`` on ``config.host`` and load it locally.

    Args:
        config: Build configuration.
        terminal: Terminal relayed commands are bridged to (stdio if None).
        cancellation: Cancellation context; a private one is used if None.
        console: Console commands are echoed to.

    Returns:
        PipelineResult; never raises for pipeline failures.
    """
    if terminal is None:
        terminal = LocalTerminal.from_stdio()
    if console is None:
        console = Console()

    run = _Run()

    def _abort(exit_code: ExitCode, message: str) -> PipelineResult:
        logger.debug("Aborted in state %s", run.state.value)
        run.advance(PipelineState.ABORTED)
        return PipelineResult(
            state=run.state,
            exit_code=exit_code,
            scratch_dir=run.scratch_dir,
            image_path=run.image_path,
            error_message=message,
        )

    if not terminal.is_interactive():
        message = "Standard input is not a terminal; an interactive terminal is required"
        logger.error("%s", message)
        return _abort(ExitCode.FAILURE, message)

    with ExitStack() as stack:
        if cancellation is None:
            cancellation = stack.enter_context(CancellationContext())
        ctx = StageContext(
            config=config, terminal=terminal, cancellation=cancellation, console=console
        )

        logger.info("Building %s on %s", config.tag, config.host)
        try:
            _execute(run, ctx)
        except OperationCancelledError as e:
            logger.error("Aborted: %s", e.reason)
            return _abort(ExitCode.ABORTED, str(e))
        except PIPELINE_ERRORS as e:
            # A stage can fail from the same signal that cancelled the run,
            # so a recorded cancellation decides the outcome
            cause = cancellation.error if cancellation.cancelled else e
            if cause is None:
                reason = cancellation.reason or "cancelled"
                logger.error("Aborted: %s", reason)
                return _abort(ExitCode.ABORTED, str(OperationCancelledError(reason)))
            logger.error("%s", cause)
            return _abort(ExitCode.FAILURE, str(cause))

    run.advance(PipelineState.DONE)
    logger.info("Loaded %s from %s", config.tag, config.host)
    return PipelineResult(
        state=run.state,
        exit_code=ExitCode.OK,
        scratch_dir=run.scratch_dir,
        image_path=run.image_path,
    )


__all__ = ["PipelineResult", "run_pipeline", "scratch_directory"]
