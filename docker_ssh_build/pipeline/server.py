"""Content server publishing the scratch directory over HTTP.

This module handles:
- Building a FastAPI application serving static files from a directory
- Running it with uvicorn on a background thread
- A readiness barrier: start() returns only once the listener is bound
- Probing that the build context is actually served
- Reporting a server that stops unexpectedly
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path
from types import TracebackType

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from docker_ssh_build import __version__
from docker_ssh_build.cancel import CancellationContext

logger = logging.getLogger(__name__)

# Timeout for a single HEAD probe (seconds)
PROBE_TIMEOUT = 2.0

# Backoff between readiness probes (seconds)
PROBE_INITIAL_DELAY = 0.05
PROBE_MAX_DELAY = 1.0

# Timeout waiting for the server thread on shutdown (seconds)
SHUTDOWN_TIMEOUT = 5.0


class ContentServerError(Exception):
    """Raised when the content server fails to start or stops unexpectedly."""

    def __init__(self, message: str, code: str = "content_server") -> None:
        super().__init__(message)
        self.code = code


def create_app(root: Path) -> FastAPI:
    """Create the application serving files below ``root``.

    Args:
        root: Directory to publish.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="docker-ssh-build context server",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    application.mount("/", StaticFiles(directory=root), name="context")
    return application


class ContentServer:
    """Short-lived HTTP server rooted at a directory.

    Attributes:
        root: Directory being served.
        host: Bind address.
        port: Bind port.
    """

    def __init__(
        self,
        root: Path,
        host: str,
        port: int,
        ready_timeout: float = 10.0,
        on_failure: Callable[[ContentServerError], None] | None = None,
        cancellation: CancellationContext | None = None,
    ) -> None:
        self.root = root
        self.host = host
        self.port = port
        self.ready_timeout = ready_timeout
        self._on_failure = on_failure
        self._cancellation = cancellation
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._stopping = False

    @property
    def base_url(self) -> str:
        """Base URL of the server."""
        return f"http://{self.host}:{self.port}"

    @property
    def running(self) -> bool:
        """Whether the server thread is alive and has started."""
        return (
            self._server is not None
            and self._server.started
            and self._thread is not None
            and self._thread.is_alive()
        )

    def _pause(self, delay: float) -> None:
        """Sleep for ``delay``, raising early if the run is cancelled."""
        if self._cancellation is None:
            time.sleep(delay)
            return
        self._cancellation.wait(delay)
        self._cancellation.raise_if_cancelled()

    def _serve(self, server: uvicorn.Server) -> None:
        try:
            server.run()
        finally:
            if not self._stopping and server.started:
                error = ContentServerError(
                    f"Content server on {self.base_url} stopped unexpectedly"
                )
                logger.error("%s", error)
                if self._on_failure is not None:
                    self._on_failure(error)

    def start(self) -> None:
        """Start serving and wait until the listener is accepting.

        Raises:
            ContentServerError: If the server thread exits before starting
                (e.g. the port is already bound) or does not start in time.
            OperationCancelledError: If the run is cancelled while waiting.
        """
        config = uvicorn.Config(
            create_app(self.root),
            host=self.host,
            port=self.port,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._serve,
            args=(self._server,),
            name="content-server",
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + self.ready_timeout
        while not self._server.started:
            if not self._thread.is_alive():
                raise ContentServerError(
                    f"Content server failed to start on {self.base_url}",
                    code="content_server_bind",
                )
            if time.monotonic() >= deadline:
                self.stop()
                raise ContentServerError(
                    f"Content server did not start within {self.ready_timeout}s",
                    code="content_server_timeout",
                )
            try:
                self._pause(0.01)
            except Exception:
                self.stop()
                raise

        logger.info("Serving %s on %s", self.root, self.base_url)

    def wait_until_reachable(self, path: str) -> None:
        """Probe ``path`` until it is served, backing off between attempts.

        Raises:
            ContentServerError: If the file is not served within
                ``ready_timeout``.
            OperationCancelledError: If the run is cancelled while probing.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        deadline = time.monotonic() + self.ready_timeout
        delay = PROBE_INITIAL_DELAY
        last_error = "no response"

        with httpx.Client(timeout=PROBE_TIMEOUT, trust_env=False) as client:
            while True:
                try:
                    response = client.head(url)
                    if response.status_code == 200:
                        logger.debug("Probe of %s succeeded", url)
                        return
                    last_error = f"HTTP {response.status_code}"
                except httpx.HTTPError as e:
                    last_error = str(e)

                if time.monotonic() + delay > deadline:
                    raise ContentServerError(
                        f"{url} not reachable within {self.ready_timeout}s: {last_error}",
                        code="content_server_unreachable",
                    )
                self._pause(delay)
                delay = min(delay * 2, PROBE_MAX_DELAY)

    def stop(self) -> None:
        """Shut the server down and join its thread."""
        self._stopping = True
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=SHUTDOWN_TIMEOUT)
            if self._thread.is_alive():
                logger.warning("Content server thread did not stop in time")
            else:
                logger.debug("Content server stopped")

    def __enter__(self) -> ContentServer:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()


__all__ = ["ContentServer", "ContentServerError", "create_app"]
