"""Process relay for running external commands on a pseudo-terminal.

This module handles:
- Starting a command attached to a freshly allocated pty
- Bridging local input and output to the pty while the local terminal
  is in raw mode
- Forwarding terminal resizes
- Terminating and reaping the command on cancellation

Every resource acquired by a relay call is released through an ExitStack,
so the terminal mode is restored and the pty closed on every exit path.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import pty
import select
import shlex
import signal
import subprocess
import termios
import threading
from collections.abc import Sequence
from contextlib import ExitStack
from dataclasses import dataclass
from types import TracebackType

from docker_ssh_build.cancel import CancellationContext
from docker_ssh_build.relay.resize import ResizeForwarder
from docker_ssh_build.relay.terminal import LocalTerminal, inherit_size

logger = logging.getLogger(__name__)

# Read size for both copy directions
CHUNK_SIZE = 32 * 1024

# Bound on how long teardown waits for the input pump to notice its stop pipe
INPUT_STOP_TIMEOUT = 0.5

DEFAULT_TERMINATE_TIMEOUT = 5.0


class RelayStartupError(Exception):
    """Raised when a relayed command cannot be started."""

    def __init__(
        self, message: str, command: str | None = None, code: str = "relay_startup"
    ) -> None:
        super().__init__(message)
        self.command = command
        self.code = code


@dataclass
class RelayResult:
    """Result of a relayed command.

    Attributes:
        command: The command that was executed.
        exit_code: Process exit code (negative if killed by a signal).
    """

    command: str
    exit_code: int

    @property
    def success(self) -> bool:
        """Whether the command exited with status zero."""
        return self.exit_code == 0


def _close_quietly(fd: int, what: str) -> None:
    try:
        os.close(fd)
    except OSError as e:
        logger.debug("Error closing %s: %s", what, e)


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def _acquire_controlling_tty() -> None:
    # Runs in the forked child after setsid(), where stdin is already the pty
    # slave. Other threads may exist at fork time, so this must stay a single
    # ioctl: no logging, no imports, no locks.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def terminate_process(
    proc: subprocess.Popen[bytes],
    timeout: float = DEFAULT_TERMINATE_TIMEOUT,
    group: bool = False,
) -> int:
    """Request termination of a process, kill it after ``timeout``, and reap it.

    Args:
        proc: Process to stop.
        timeout: Seconds to wait after SIGTERM before sending SIGKILL.
        group: Signal the whole process group led by ``proc``.

    Returns:
        The process exit code.
    """
    if proc.poll() is not None:
        return proc.returncode

    def _send(sig: signal.Signals) -> None:
        try:
            if group:
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except ProcessLookupError:
            pass

    logger.debug("Sending SIGTERM to pid %d", proc.pid)
    _send(signal.SIGTERM)
    try:
        return proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(
            "Process %d did not exit %.1fs after SIGTERM, killing it", proc.pid, timeout
        )
        _send(signal.SIGKILL)
        return proc.wait()


def wait_for_exit(
    proc: subprocess.Popen[bytes],
    cancellation: CancellationContext | None = None,
    terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
    group: bool = False,
    poll_interval: float = 0.1,
) -> int:
    """Wait for a process, stopping it if cancellation is requested.

    Returns:
        The process exit code.

    Raises:
        OperationCancelledError: Or the error attached to the cancellation
            context, once the process has been terminated and reaped.
    """
    if cancellation is None:
        return proc.wait()

    while True:
        try:
            return proc.wait(timeout=poll_interval)
        except subprocess.TimeoutExpired:
            pass
        if cancellation.wait(0):
            terminate_process(proc, terminate_timeout, group=group)
            cancellation.raise_if_cancelled()


class _InputPump:
    """Copies local input to the pty master on a background thread.

    The thread blocks in select on the input descriptor and a stop pipe,
    so it can be stopped without waiting for a final keystroke.
    """

    def __init__(self, stdin_fd: int, master_fd: int) -> None:
        self._stdin_fd = stdin_fd
        self._master_fd = master_fd
        self._stop_r, self._stop_w = os.pipe()
        self._thread = threading.Thread(target=self._run, name="pty-input", daemon=True)

    def _run(self) -> None:
        try:
            while True:
                readable, _, _ = select.select([self._stdin_fd, self._stop_r], [], [])
                if self._stop_r in readable:
                    return
                data = os.read(self._stdin_fd, CHUNK_SIZE)
                if not data:
                    return
                _write_all(self._master_fd, data)
        except OSError as e:
            logger.debug("Input forwarding stopped: %s", e)
        finally:
            _close_quietly(self._stop_r, "input stop pipe")

    def __enter__(self) -> _InputPump:
        self._thread.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            os.write(self._stop_w, b"\0")
        finally:
            _close_quietly(self._stop_w, "input stop pipe")
        self._thread.join(timeout=INPUT_STOP_TIMEOUT)


def _copy_output(
    master_fd: int,
    stdout_fd: int,
    cancellation: CancellationContext | None,
) -> bool:
    """Copy pty output to the local terminal until end of stream.

    Returns:
        True on end of stream, False if cancellation was requested first.
    """
    watched = [master_fd]
    if cancellation is not None:
        watched.append(cancellation.fileno())

    write_failed = False
    while True:
        if cancellation is not None and cancellation.cancelled:
            return False
        readable, _, _ = select.select(watched, [], [])
        if master_fd not in readable:
            continue
        try:
            data = os.read(master_fd, CHUNK_SIZE)
        except OSError as e:
            # Linux reports EIO once the slave side has been closed
            if e.errno != errno.EIO:
                logger.warning("Error reading from pty: %s", e)
            return True
        if not data:
            return True
        try:
            _write_all(stdout_fd, data)
        except OSError as e:
            # Keep draining so the command never blocks on a full pty
            if not write_failed:
                logger.warning("Error writing relayed output: %s", e)
                write_failed = True


def run_relayed(
    command: Sequence[str],
    terminal: LocalTerminal | None = None,
    cancellation: CancellationContext | None = None,
    terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
) -> RelayResult:
    """Run a command as if it were attached directly to the local terminal.

    Args:
        command: Program and arguments.
        terminal: Terminal to bridge; defaults to this process's stdio.
        cancellation: Optional cancellation context. When it fires, the
            command's process group is terminated and reaped.
        terminate_timeout: Grace period before SIGKILL on cancellation.

    Returns:
        RelayResult with the command's exit code.

    Raises:
        RelayStartupError: If stdin is not a terminal, the pty cannot be
            allocated, or the command cannot be started.
        TerminalStateError: If raw mode cannot be entered.
        OperationCancelledError: If cancelled while the command runs.
    """
    if terminal is None:
        terminal = LocalTerminal.from_stdio()
    cmd_str = shlex.join(command)

    if not terminal.is_interactive():
        raise RelayStartupError(
            "Standard input is not a terminal; an interactive terminal is required",
            command=cmd_str,
        )

    with ExitStack() as stack:
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise RelayStartupError(
                f"Failed to allocate pseudo-terminal: {e}", command=cmd_str
            ) from e
        stack.callback(_close_quietly, master_fd, "pty master")

        # The command must never start on a 0x0 terminal
        try:
            inherit_size(terminal, master_fd)
        except OSError as e:
            logger.warning("Error resizing pty: %s", e)

        try:
            proc = subprocess.Popen(
                list(command),
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise RelayStartupError(
                f"Failed to start {command[0]}: {e}", command=cmd_str
            ) from e
        finally:
            _close_quietly(slave_fd, "pty slave")

        logger.debug("Started pid %d: %s", proc.pid, cmd_str)
        stack.callback(terminate_process, proc, terminate_timeout, True)

        # No relay thread may be running while Popen forks
        stack.enter_context(ResizeForwarder(terminal, master_fd))

        stack.enter_context(terminal.raw_mode())
        stack.enter_context(_InputPump(terminal.stdin_fd, master_fd))

        completed = _copy_output(master_fd, terminal.stdout_fd, cancellation)
        if not completed and cancellation is not None:
            logger.info("Cancelling %s", cmd_str)
            terminate_process(proc, terminate_timeout, group=True)
            cancellation.raise_if_cancelled()

        exit_code = wait_for_exit(proc, cancellation, terminate_timeout, group=True)

    logger.debug("Command exited with %d: %s", exit_code, cmd_str)
    return RelayResult(command=cmd_str, exit_code=exit_code)


__all__ = [
    "CHUNK_SIZE",
    "RelayResult",
    "RelayStartupError",
    "run_relayed",
    "terminate_process",
    "wait_for_exit",
]
