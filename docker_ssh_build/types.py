"""Shared type definitions for docker_ssh_build.

This module contains enums shared across subpackages to avoid circular
imports.
"""

from enum import Enum, IntEnum


class PipelineState(str, Enum):
    """State of a remote build pipeline run."""

    INIT = "init"
    CONTEXT_PUBLISHED = "context_published"
    SERVING = "serving"
    BUILT = "built"
    TRANSFERRED = "transferred"
    IMPORTED = "imported"
    DONE = "done"
    ABORTED = "aborted"


class ExitCode(IntEnum):
    """Process exit status of the command line tool."""

    OK = 0
    FAILURE = 1
    USAGE = 2
    ABORTED = 130


__all__ = ["ExitCode", "PipelineState"]
