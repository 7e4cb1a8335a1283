"""Terminal resize forwarding for relayed processes."""

from __future__ import annotations

import logging
import queue
import signal
import threading
from types import FrameType, TracebackType

from docker_ssh_build.relay.terminal import LocalTerminal, inherit_size

logger = logging.getLogger(__name__)


class ResizeForwarder:
    """SIGWINCH subscription owned by a single relay call.

    On enter the current size is applied once, then every SIGWINCH queues a
    resize that a worker thread copies onto the pseudo-terminal. On exit the
    previous handler is restored and the worker is joined.

    Signal handlers can only be installed from the main thread; elsewhere
    only the initial size is applied.
    """

    def __init__(self, terminal: LocalTerminal, pty_fd: int) -> None:
        self._terminal = terminal
        self._pty_fd = pty_fd
        self._events: queue.SimpleQueue[bool] = queue.SimpleQueue()
        self._thread: threading.Thread | None = None
        self._previous_handler: object = None
        self._installed = False

    def forward(self) -> bool:
        """Copy the current terminal size. Failures are logged, not raised.

        Returns:
            True if the size was applied.
        """
        try:
            inherit_size(self._terminal, self._pty_fd)
        except OSError as e:
            logger.warning("Error resizing pty: %s", e)
            return False
        return True

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        self._events.put(True)

    def _run(self) -> None:
        while self._events.get():
            self.forward()

    def __enter__(self) -> ResizeForwarder:
        self.forward()

        try:
            self._previous_handler = signal.signal(signal.SIGWINCH, self._on_signal)
            self._installed = True
        except ValueError:
            logger.debug("Not on the main thread, resize events will not be forwarded")
            return self

        self._thread = threading.Thread(
            target=self._run, name="pty-resize", daemon=True
        )
        self._thread.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._installed:
            previous = self._previous_handler
            signal.signal(
                signal.SIGWINCH, previous if previous is not None else signal.SIG_DFL
            )
            self._installed = False
        if self._thread is not None:
            self._events.put(False)
            self._thread.join()
            self._thread = None


__all__ = ["ResizeForwarder"]
