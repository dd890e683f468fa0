from __future__ import annotations

from typing import Sequence


class IpsetError(Exception):
    """Base class for every error raised by ipsetctl."""


class ExecutableNotFound(IpsetError):
    def __init__(self, executable: str):
        self.executable = executable
        super().__init__(f"ipset utility not found: {executable}")


class UnsupportedVersion(IpsetError):
    def __init__(self, version: object, minimum: object):
        self.version = version
        self.minimum = minimum
        super().__init__(
            f"ipset utility version {version} is not supported, requiring version >= {minimum}"
        )


class VersionCheckIndeterminate(IpsetError):
    """The utility's version could not be queried or parsed."""


class InvalidArgument(IpsetError, ValueError):
    """Rejected before any subprocess was started."""


class CommandFailed(IpsetError):
    """The utility exited non-zero.

    ``output`` holds the combined stdout/stderr text exactly as captured so
    that utility-level problems (missing kernel module, permission denied)
    can be diagnosed from the message alone.
    """

    def __init__(
        self,
        operation: str,
        target: str | None,
        returncode: int,
        output: str,
        args: Sequence[str] = (),
    ):
        self.operation = operation
        self.target = target
        self.returncode = returncode
        self.output = output
        self.command = list(args)
        subject = f" {target}" if target else ""
        super().__init__(
            f"error {operation}{subject}: exit status {returncode} ({output.strip()})"
        )
