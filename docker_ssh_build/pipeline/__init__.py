"""Remote build pipeline module.

This module handles:
- Command composition for the archiver, ssh and the container engine
- Serving the build context to the remote host
- The archive, remote build, transfer and import stages
- Orchestration and exit code mapping
"""

from docker_ssh_build.pipeline.server import ContentServer, ContentServerError
from docker_ssh_build.pipeline.service import (
    PipelineResult,
    run_pipeline,
    scratch_directory,
)
from docker_ssh_build.pipeline.stages import StageContext, StageError

__all__ = [
    "ContentServer",
    "ContentServerError",
    "PipelineResult",
    "StageContext",
    "StageError",
    "run_pipeline",
    "scratch_directory",
]
