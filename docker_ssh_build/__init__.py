"""docker-ssh-build - build container images on a remote host over SSH.

This package packages the current directory as a build context, builds it
on a remote Docker engine through a reverse SSH tunnel, and loads the
resulting image into the local engine.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
