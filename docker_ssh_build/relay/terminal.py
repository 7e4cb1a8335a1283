"""Local terminal handling for relayed processes.

This module handles:
- Raw mode switching with guaranteed restore
- Reading the invoking terminal's window size
- Copying that size onto a pseudo-terminal
"""

from __future__ import annotations

import fcntl
import logging
import os
import struct
import sys
import termios
import tty
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)

_WINSIZE_FORMAT = "HHHH"


class TerminalStateError(Exception):
    """Raised when the invoking terminal cannot be switched to raw mode."""

    def __init__(self, message: str, code: str = "terminal_state") -> None:
        super().__init__(message)
        self.code = code


class LocalTerminal:
    """The terminal a relayed process is bridged to.

    Attributes:
        stdin_fd: Descriptor user input is read from. Must be a tty for
            raw mode and size queries.
        stdout_fd: Descriptor relayed output is written to.
    """

    def __init__(self, stdin_fd: int, stdout_fd: int) -> None:
        self.stdin_fd = stdin_fd
        self.stdout_fd = stdout_fd

    @classmethod
    def from_stdio(cls) -> LocalTerminal:
        """Create a terminal bound to this process's stdin and stdout."""
        sys.stdout.flush()
        return cls(sys.stdin.fileno(), sys.stdout.fileno())

    def is_interactive(self) -> bool:
        """Return True if input comes from a terminal."""
        return os.isatty(self.stdin_fd)

    def get_mode(self) -> list[Any]:
        """Return the current termios attributes of the input terminal."""
        return termios.tcgetattr(self.stdin_fd)

    @contextmanager
    def raw_mode(self) -> Iterator[None]:
        """Put the input terminal in raw mode for the duration of the block.

        The saved mode is restored on every exit path. A failure to restore
        is logged, not raised.

        Raises:
            TerminalStateError: If the mode cannot be read or changed.
        """
        try:
            saved = termios.tcgetattr(self.stdin_fd)
            tty.setraw(self.stdin_fd)
        except (termios.error, OSError) as e:
            raise TerminalStateError(f"Failed to set terminal to raw mode: {e}") from e

        logger.debug("Terminal fd %d switched to raw mode", self.stdin_fd)
        try:
            yield
        finally:
            try:
                termios.tcsetattr(self.stdin_fd, termios.TCSADRAIN, saved)
                logger.debug("Terminal fd %d restored", self.stdin_fd)
            except (termios.error, OSError) as e:
                logger.warning("Failed to restore terminal mode: %s", e)

    def get_size(self) -> tuple[int, int]:
        """Return the terminal size as (rows, columns)."""
        packed = fcntl.ioctl(
            self.stdin_fd, termios.TIOCGWINSZ, struct.pack(_WINSIZE_FORMAT, 0, 0, 0, 0)
        )
        rows, cols, _, _ = struct.unpack(_WINSIZE_FORMAT, packed)
        return rows, cols


def set_size(pty_fd: int, rows: int, cols: int) -> None:
    """Set the window size of a pseudo-terminal."""
    fcntl.ioctl(pty_fd, termios.TIOCSWINSZ, struct.pack(_WINSIZE_FORMAT, rows, cols, 0, 0))


def inherit_size(terminal: LocalTerminal, pty_fd: int) -> None:
    """Copy the invoking terminal's size onto a pseudo-terminal.

    Raises:
        OSError: If either ioctl fails.
    """
    rows, cols = terminal.get_size()
    set_size(pty_fd, rows, cols)


__all__ = ["LocalTerminal", "TerminalStateError", "inherit_size", "set_size"]
