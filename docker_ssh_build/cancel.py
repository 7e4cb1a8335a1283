"""Process-wide cancellation context.

This module handles:
- Recording that an abort was requested (signal or background failure)
- Waking blocking ``select`` loops through a self-pipe
- Installing and restoring SIGINT/SIGTERM handlers for a run
"""

from __future__ import annotations

import logging
import os
import select
import signal
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from types import FrameType, TracebackType

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class OperationCancelledError(Exception):
    """Raised when a running operation observes a cancellation request."""

    def __init__(self, reason: str = "cancelled", code: str = "cancelled") -> None:
        super().__init__(f"Operation cancelled: {reason}")
        self.reason = reason
        self.code = code


class CancellationContext:
    """Shared "abort requested" state for one pipeline run.

    ``cancel`` only sets a flag and writes one byte to a non-blocking pipe,
    so it is safe to call from a signal handler. Loops that block in
    ``select`` include ``fileno()`` in their read set to wake up promptly.

    Attributes:
        reason: Human readable cause of the cancellation, if cancelled.
        error: Exception attached by a background failure, if any.
    """

    def __init__(self) -> None:
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)
        self._cancelled = False
        self.reason: str | None = None
        self.error: BaseException | None = None

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._cancelled

    def fileno(self) -> int:
        """Return a descriptor that becomes readable once cancelled."""
        return self._read_fd

    def cancel(self, reason: str = "cancelled", error: BaseException | None = None) -> None:
        """Request cancellation. Only the first request is recorded.

        Args:
            reason: Description of why the run is aborted.
            error: Optional exception to surface instead of a plain
                cancellation (used for background failures).
        """
        if self._cancelled:
            return
        self.reason = reason
        self.error = error
        self._cancelled = True
        try:
            os.write(self._write_fd, b"\0")
        except (BlockingIOError, OSError):
            # Pipe full or already closed; the flag is what matters.
            pass

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or until ``timeout`` elapses.

        Returns:
            True if cancellation was requested.
        """
        if self._cancelled:
            return True
        select.select([self._read_fd], [], [], timeout)
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        """Raise if cancellation has been requested.

        Raises:
            The attached background error if one was recorded, otherwise
            OperationCancelledError.
        """
        if not self._cancelled:
            return
        if self.error is not None:
            raise self.error
        raise OperationCancelledError(self.reason or "cancelled")

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        self.cancel(f"received {signal.Signals(signum).name}")

    @contextmanager
    def handle_signals(
        self, signals: Sequence[signal.Signals] = DEFAULT_SIGNALS
    ) -> Iterator[CancellationContext]:
        """Route the given signals to ``cancel`` while the block runs.

        Previous handlers are restored on exit.
        """
        previous: dict[signal.Signals, object] = {}
        try:
            for sig in signals:
                previous[sig] = signal.signal(sig, self._on_signal)
            yield self
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler if handler is not None else signal.SIG_DFL)

    def close(self) -> None:
        """Release the wake-up pipe."""
        for fd in (self._read_fd, self._write_fd):
            try:
                os.close(fd)
            except OSError as e:
                logger.debug("Error closing cancellation pipe: %s", e)

    def __enter__(self) -> CancellationContext:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


__all__ = ["CancellationContext", "DEFAULT_SIGNALS", "OperationCancelledError"]
