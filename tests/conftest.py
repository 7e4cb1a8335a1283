"""Shared fixtures: a fake local terminal and stub external tools.

The fake terminal is a real pseudo-terminal pair, so raw mode and window
size behave as they do on a user's terminal. Relayed output is written to a
file instead of the screen.

The stub tools are small executable scripts standing in for tar, ssh and
docker. Each call is appended to a JSON-lines log, and behaviour is chosen
through environment variables so tests can make a stage fail.
"""

import json
import os
import pty
import socket
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from docker_ssh_build.config import BuildConfig, Settings
from docker_ssh_build.relay.terminal import LocalTerminal, set_size

IMAGE_BYTES = b"IMAGE-ARCHIVE"

_PREAMBLE = """\
#!{python}
import json, os, signal, sys, time, urllib.request
with open({log!r}, "a") as log:
    log.write(json.dumps([{name!r}, *sys.argv[1:]]) + "\\n")
args = sys.argv[1:]
"""

FAKE_TAR = """
mode = os.environ.get("FAKE_TAR_MODE", "ok")
if mode == "fail":
    print("tar: simulated failure")
    sys.exit(2)
if mode != "empty":
    with open(args[1], "wb") as bundle:
        bundle.write(b"fake-build-context")
print("archived")
"""

FAKE_SSH = """
if "-R" in args:
    mode = os.environ.get("FAKE_BUILD_MODE", "ok")
    if mode == "fail":
        print("remote build failed")
        sys.exit(1)
    if mode == "interrupt":
        os.kill(os.getppid(), signal.SIGINT)
        time.sleep(30)
        sys.exit(0)
    if mode == "block":
        print("building")
        time.sleep(30)
        sys.exit(0)
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    body = opener.open(args[-1], timeout=5).read()
    print("fetched %d bytes of build context" % len(body))
    sys.exit(0)
if "save" in args:
    mode = os.environ.get("FAKE_SAVE_MODE", "ok")
    if mode == "fail":
        sys.stderr.write("Error: No such image\\n")
        sys.exit(1)
    if mode == "interrupt":
        # Ctrl-C reaches both this process and the caller
        signal.signal(signal.SIGINT, signal.SIG_DFL)
        os.kill(os.getppid(), signal.SIGINT)
        os.kill(os.getpid(), signal.SIGINT)
        time.sleep(30)
    sys.stdout.buffer.write(b"IMAGE-ARCHIVE")
    sys.stdout.flush()
    if mode == "killed":
        os.kill(os.getpid(), signal.SIGKILL)
    sys.exit(0)
sys.exit(255)
"""

FAKE_DOCKER = """
if os.environ.get("FAKE_LOAD_MODE") == "fail":
    print("Error: invalid tar header")
    sys.exit(1)
with open(args[2], "rb") as image:
    if image.read() != b"IMAGE-ARCHIVE":
        print("Error: unexpected image content")
        sys.exit(1)
print("Loaded image")
"""


@dataclass
class TerminalHarness:
    """Fake local terminal plus the handles tests need to drive it."""

    terminal: LocalTerminal
    master_fd: int
    output_path: Path

    def output(self) -> bytes:
        return self.output_path.read_bytes()


@dataclass
class FakeTools:
    """Stub tar, ssh and docker executables."""

    bin_dir: Path
    log_path: Path

    @property
    def tar(self) -> str:
        return str(self.bin_dir / "tar")

    @property
    def ssh(self) -> str:
        return str(self.bin_dir / "ssh")

    @property
    def docker(self) -> str:
        return str(self.bin_dir / "docker")

    def calls(self) -> list[list[str]]:
        if not self.log_path.exists():
            return []
        return [json.loads(line) for line in self.log_path.read_text().splitlines()]

    def called_tools(self) -> list[str]:
        return [call[0] for call in self.calls()]


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port() -> int:
    """Return a currently unused local TCP port."""
    return _free_port()


@pytest.fixture
def pty_terminal(tmp_path) -> Iterator[TerminalHarness]:
    """Create a fake interactive terminal sized 40x100."""
    master_fd, slave_fd = pty.openpty()
    set_size(slave_fd, 40, 100)
    output_path = tmp_path / "terminal.out"
    output_fd = os.open(output_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)

    yield TerminalHarness(
        terminal=LocalTerminal(slave_fd, output_fd),
        master_fd=master_fd,
        output_path=output_path,
    )

    for fd in (output_fd, slave_fd, master_fd):
        os.close(fd)


@pytest.fixture
def fake_tools(tmp_path) -> FakeTools:
    """Write stub tar, ssh and docker scripts into tmp_path/bin."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    log_path = tmp_path / "calls.jsonl"

    for name, body in (("tar", FAKE_TAR), ("ssh", FAKE_SSH), ("docker", FAKE_DOCKER)):
        script = bin_dir / name
        preamble = _PREAMBLE.format(python=sys.executable, log=str(log_path), name=name)
        script.write_text(preamble + body)
        script.chmod(0o755)

    return FakeTools(bin_dir=bin_dir, log_path=log_path)


@pytest.fixture
def settings(tmp_path, fake_tools, free_port) -> Settings:
    """Settings wired to the stub tools and an isolated scratch root.

    The remote port equals the serve port, so the stub ssh can fetch the
    context URL directly from the local content server.
    """
    scratch_root = tmp_path / "scratch"
    scratch_root.mkdir()
    return Settings(
        tmp_dir=scratch_root,
        serve_port=free_port,
        remote_port=free_port,
        ssh_command=fake_tools.ssh,
        tar_command=fake_tools.tar,
        docker_command=fake_tools.docker,
        server_ready_timeout=5.0,
        terminate_timeout=2.0,
    )


@pytest.fixture
def build_config(settings) -> BuildConfig:
    """Build configuration for host build01 and tag myapp:test."""
    return BuildConfig(host="build01", tag="myapp:test", settings=settings)
