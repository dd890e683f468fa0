from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Iterable

from pydantic import BaseModel, ConfigDict, field_validator

from . import parsing
from .errors import (
    CommandFailed,
    InvalidArgument,
    IpsetError,
    UnsupportedVersion,
    VersionCheckIndeterminate,
)
from .parsing import MINIMUM_VERSION, IpsetVersion, Member, SetInfo
from .runner import IpsetRunner, Runner, Which, command_args, locate_executable

logger = logging.getLogger(__name__)

HASH_TYPE_PREFIX = "hash:"
TEMP_SUFFIX = "-temp"
FAMILIES = ("inet", "inet6")

# The ipset utility's own defaults.
DEFAULT_HASH_SIZE = 1024
DEFAULT_MAX_ELEMENTS = 65536
DEFAULT_FAMILY = "inet"


class SetParams(BaseModel):
    hash_family: str = DEFAULT_FAMILY
    hash_size: int = DEFAULT_HASH_SIZE
    max_elements: int = DEFAULT_MAX_ELEMENTS
    timeout: int = 0
    exist: bool = False
    # Further create tokens such as "counters" or "netmask 24", passed verbatim.
    extra_options: tuple[str, ...] = ()

    model_config = ConfigDict(extra="forbid")

    @field_validator("hash_family", mode="before")
    @classmethod
    def _default_family(cls, value: object) -> object:
        if value in (None, ""):
            return DEFAULT_FAMILY
        if value not in FAMILIES:
            raise ValueError(f"family must be one of {', '.join(FAMILIES)}")
        return value

    @field_validator("hash_size", mode="before")
    @classmethod
    def _default_hash_size(cls, value: object) -> object:
        return DEFAULT_HASH_SIZE if value in (None, 0) else value

    @field_validator("max_elements", mode="before")
    @classmethod
    def _default_max_elements(cls, value: object) -> object:
        return DEFAULT_MAX_ELEMENTS if value in (None, 0) else value

    @field_validator("timeout")
    @classmethod
    def _non_negative_timeout(cls, value: int) -> int:
        if value < 0:
            raise ValueError("timeout must not be negative")
        return value


@dataclass
class RefreshResult:
    loaded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed


@dataclass
class IPSet:
    """Handle to a set held by the ipset utility.

    Only the creation metadata lives here; members are always queried live.
    """

    name: str
    hash_type: str
    hash_family: str = DEFAULT_FAMILY
    hash_size: int = DEFAULT_HASH_SIZE
    max_elements: int = DEFAULT_MAX_ELEMENTS
    timeout: int = 0
    extra_options: tuple[str, ...] = ()
    manager: "SetManager | None" = field(default=None, repr=False, compare=False)

    def _bound(self) -> "SetManager":
        if self.manager is None:
            raise InvalidArgument(f"set {self.name} has been destroyed")
        return self.manager

    def add(self, entry: str, timeout: int = 0, option: str | None = None) -> None:
        self._bound().add(self.name, entry, timeout, option)

    def add_option(self, entry: str, option: str, timeout: int = 0) -> None:
        self._bound().add_option(self.name, entry, option, timeout)

    def delete(self, entry: str) -> None:
        self._bound().delete(self.name, entry)

    def test(self, entry: str) -> bool:
        return self._bound().test(self.name, entry)

    def flush(self) -> None:
        self._bound().flush(self.name)

    def list(self) -> list[str]:
        return self._bound().list(self.name)

    def members(self) -> list[Member]:
        return self._bound().members(self.name)

    def refresh(self, entries: Iterable[str]) -> RefreshResult:
        return self._bound().refresh(self, entries)

    def destroy(self) -> None:
        self._bound().destroy(self.name)
        self.manager = None


class SetManager:
    """Drives the ipset utility.

    Obtain one with :meth:`open`, which resolves the executable and checks
    its version once; the resolved path is kept for the manager's lifetime.
    Every method blocks for the duration of the subprocess it spawns.

    Concurrent :meth:`refresh` calls for the same set race on the shared
    ``<name>-temp`` set unless the manager was opened with
    ``serialize_refresh=True``, which holds a lock per set name.
    """

    def __init__(self, runner: IpsetRunner, *, serialize_refresh: bool = False):
        self._runner: IpsetRunner | None = runner
        self.serialize_refresh = serialize_refresh
        self.detected_version: IpsetVersion | None = None
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def open(
        cls,
        executable: str = "ipset",
        *,
        runner: Runner = subprocess.run,
        which: Which = shutil.which,
        min_version: IpsetVersion = MINIMUM_VERSION,
        serialize_refresh: bool = False,
    ) -> "SetManager":
        path = locate_executable(executable, which=which)
        manager = cls(IpsetRunner(path, runner), serialize_refresh=serialize_refresh)
        try:
            version = manager.query_version()
        except VersionCheckIndeterminate as exc:
            logger.warning("Error checking ipset version, assuming version at least %s: %s", min_version, exc)
            return manager
        if not parsing.is_supported(version, min_version):
            raise UnsupportedVersion(version, min_version)
        return manager

    def close(self) -> None:
        self._runner = None

    def __enter__(self) -> "SetManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def runner(self) -> IpsetRunner:
        if self._runner is None:
            raise IpsetError("SetManager has been closed")
        return self._runner

    @property
    def path(self) -> str:
        return self.runner.path

    def query_version(self) -> IpsetVersion:
        try:
            result = self.runner.call("--version")
        except OSError as exc:
            raise VersionCheckIndeterminate(str(exc)) from exc
        if not result.ok:
            raise VersionCheckIndeterminate(
                f"ipset --version exited with status {result.returncode} ({result.output.strip()})"
            )
        try:
            version = parsing.parse_version(result.output)
        except ValueError as exc:
            raise VersionCheckIndeterminate(str(exc)) from exc
        self.detected_version = version
        return version

    def _create_hash_set(self, ipset: IPSet, name: str, exist: bool) -> None:
        args = command_args(
            [
                "create",
                name,
                ipset.hash_type,
                "family",
                ipset.hash_family,
                "hashsize",
                ipset.hash_size,
                "maxelem",
                ipset.max_elements,
                "timeout",
                ipset.timeout,
                *ipset.extra_options,
            ]
        )
        if exist:
            args.append("-exist")
        self.runner.check("creating ipset", name, *args)
        # A same-named set may have been left with members.
        self.runner.check("flushing ipset", name, "flush", name)

    def create(self, name: str, hash_type: str, params: SetParams | None = None) -> IPSet:
        if not hash_type.startswith(HASH_TYPE_PREFIX):
            raise InvalidArgument(f"not a hash type: {hash_type}")
        params = params or SetParams()
        ipset = IPSet(
            name=name,
            hash_type=hash_type,
            hash_family=params.hash_family,
            hash_size=params.hash_size,
            max_elements=params.max_elements,
            timeout=params.timeout,
            extra_options=params.extra_options,
            manager=self,
        )
        self._create_hash_set(ipset, name, params.exist)
        logger.info("Created ipset %s (%s, family %s)", name, hash_type, params.hash_family)
        return ipset

    def get(self, name: str) -> IPSet:
        """Rebuild a handle for a set that already exists in the utility."""
        info = self.info(name)
        if not info.type.startswith(HASH_TYPE_PREFIX):
            raise InvalidArgument(f"not a hash type: {info.type}")
        return IPSet(
            name=info.name,
            hash_type=info.type,
            hash_family=info.family or DEFAULT_FAMILY,
            hash_size=info.hash_size or DEFAULT_HASH_SIZE,
            max_elements=info.max_elements or DEFAULT_MAX_ELEMENTS,
            timeout=info.timeout,
            extra_options=info.extra_options,
            manager=self,
        )

    def names(self) -> list[str]:
        result = self.runner.check("listing names", None, "-n", "list")
        return parsing.parse_names(result.output)

    def list(self, name: str) -> list[str]:
        result = self.runner.check("listing set", name, "list", name)
        return parsing.parse_members(result.output)

    def members(self, name: str) -> list[Member]:
        return [parsing.parse_member_line(line) for line in self.list(name)]

    def info(self, name: str) -> SetInfo:
        result = self.runner.check("listing set", name, "list", name)
        try:
            return parsing.parse_set_info(result.output)
        except ValueError as exc:
            raise IpsetError(f"error reading header of set {name}: {exc}") from exc

    def add(self, name: str, entry: str, timeout: int = 0, option: str | None = None) -> None:
        args = ["add", name, entry, *parsing.split_option(option), "timeout", str(timeout), "-exist"]
        if option:
            operation = f"adding entry with option {option}"
        else:
            operation = "adding entry"
        self.runner.check(operation, entry, *args)

    def add_option(self, name: str, entry: str, option: str, timeout: int = 0) -> None:
        if not option:
            raise InvalidArgument("option must not be empty")
        self.add(name, entry, timeout, option)

    def delete(self, name: str, entry: str) -> None:
        self.runner.check("deleting entry", entry, "del", name, entry, "-exist")

    def test(self, name: str, entry: str) -> bool:
        result = self.runner.call("test", name, entry)
        if result.ok:
            return True
        # Absent entries exit non-zero too; only the marker tells them from errors.
        if parsing.reports_absent(result.output):
            return False
        raise CommandFailed("testing entry", entry, result.returncode, result.output, result.args)

    def flush(self, name: str | None = None) -> None:
        if name is None:
            self.runner.check("flushing all sets", None, "flush")
        else:
            self.runner.check("flushing set", name, "flush", name)

    def destroy(self, name: str) -> None:
        self.runner.check("destroying set", name, "destroy", name)
        logger.info("Destroyed ipset %s", name)

    def destroy_all(self) -> None:
        """Destroy every set known to the utility. There is no confirmation."""
        self.runner.check("destroying all sets", None, "destroy")
        logger.info("Destroyed all ipsets")

    def swap(self, from_name: str, to_name: str) -> None:
        """Hot swap two existing sets of compatible types."""
        self.runner.check("swapping ipset", f"{from_name} to {to_name}", "swap", from_name, to_name)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def refresh(self, ipset: IPSet, entries: Iterable[str]) -> RefreshResult:
        """Replace the members of ``ipset`` with ``entries``.

        The entries are loaded into ``<name>-temp``, which is then swapped
        with the live set in one step and destroyed. Entries the utility
        rejects are logged and reported in the result; they do not stop the
        swap. If the swap fails the live set is unchanged and the loaded
        temporary set is left behind for the next refresh to reuse.
        """
        if self.serialize_refresh:
            with self._lock_for(ipset.name):
                return self._refresh(ipset, entries)
        return self._refresh(ipset, entries)

    def _refresh(self, ipset: IPSet, entries: Iterable[str]) -> RefreshResult:
        temp_name = ipset.name + TEMP_SUFFIX
        self._create_hash_set(ipset, temp_name, True)

        result = RefreshResult()
        for entry in entries:
            added = self.runner.call("add", temp_name, entry, "-exist")
            if added.ok:
                result.loaded.append(entry)
            else:
                logger.error(
                    "error adding entry %s to set %s: exit status %s (%s)",
                    entry,
                    temp_name,
                    added.returncode,
                    added.output.strip(),
                )
                result.failed[entry] = added.output.strip()

        self.swap(temp_name, ipset.name)
        self.destroy(temp_name)
        logger.info(
            "Refreshed ipset %s with %d entries (%d failed)",
            ipset.name,
            len(result.loaded),
            len(result.failed),
        )
        return result

