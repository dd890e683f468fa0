from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Sequence

from .errors import CommandFailed, ExecutableNotFound

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]
Which = Callable[[str], "str | None"]


@dataclass(frozen=True)
class CommandResult:
    args: list[str]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def locate_executable(executable: str, which: Which = shutil.which) -> str:
    path = which(executable)
    if path is None:
        raise ExecutableNotFound(executable)
    return path


class IpsetRunner:
    """Invokes the ipset executable by argument vector.

    Standard output and standard error are captured together, matching what
    an operator would see on a terminal.
    """

    def __init__(self, path: str, runner: Runner = subprocess.run):
        self.path = path
        self.runner = runner

    def build(self, *args: str) -> list[str]:
        return [self.path, *args]

    def call(self, *args: str) -> CommandResult:
        command = self.build(*args)
        logger.debug("Running %s", " ".join(command))
        result = self.runner(
            command,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        return CommandResult(command, result.returncode, result.stdout or "")

    def check(self, operation: str, target: str | None, *args: str) -> CommandResult:
        result = self.call(*args)
        if not result.ok:
            raise CommandFailed(operation, target, result.returncode, result.output, result.args)
        return result


def command_args(parts: Sequence[object]) -> list[str]:
    return [str(part) for part in parts]
