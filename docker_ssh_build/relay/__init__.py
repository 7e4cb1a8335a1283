"""Process relay module.

This module handles:
- Running external commands on a pseudo-terminal
- Raw mode switching of the invoking terminal
- Terminal resize forwarding
- Cancellation of relayed commands
"""

from docker_ssh_build.relay.process import (
    RelayResult,
    RelayStartupError,
    run_relayed,
    terminate_process,
    wait_for_exit,
)
from docker_ssh_build.relay.resize import ResizeForwarder
from docker_ssh_build.relay.terminal import (
    LocalTerminal,
    TerminalStateError,
    inherit_size,
)

__all__ = [
    "LocalTerminal",
    "RelayResult",
    "RelayStartupError",
    "ResizeForwarder",
    "TerminalStateError",
    "inherit_size",
    "run_relayed",
    "terminate_process",
    "wait_for_exit",
]
