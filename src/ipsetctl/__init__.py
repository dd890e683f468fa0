"""ipsetctl package."""

from __future__ import annotations

import subprocess
from typing import Final

from .errors import (
    CommandFailed,
    ExecutableNotFound,
    InvalidArgument,
    IpsetError,
    UnsupportedVersion,
    VersionCheckIndeterminate,
)
from .manager import IPSet, RefreshResult, SetManager, SetParams
from .parsing import IpsetVersion

__all__ = [
    "__version__",
    "version_with_commit",
    "CommandFailed",
    "ExecutableNotFound",
    "InvalidArgument",
    "IPSet",
    "IpsetError",
    "IpsetVersion",
    "RefreshResult",
    "SetManager",
    "SetParams",
    "UnsupportedVersion",
    "VersionCheckIndeterminate",
]

# Keep this simple assignment so Hatch's regex version source can parse it.
__version__ = "0.1.0"
VERSION: Final[str] = __version__


def _commit_hash() -> str | None:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            check=True,
            capture_output=True,
            text=True,
        )
        return result.stdout.strip() or None
    except (FileNotFoundError, subprocess.CalledProcessError):
        return None


def version_with_commit() -> str:
    """Return the package version, with the git commit hash when available."""
    commit = _commit_hash()
    return f"{__version__} ({commit})" if commit else __version__
