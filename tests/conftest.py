from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import Callable

import pytest

from ipsetctl.manager import SetManager

IPSET_PATH = "/usr/sbin/ipset"
VALUE_OPTIONS = {"family", "hashsize", "maxelem", "timeout", "netmask", "markmask", "bucketsize", "initval"}


@dataclass
class FakeSet:
    type: str
    family: str
    hashsize: int
    maxelem: int
    timeout: int
    extras: list[str] = field(default_factory=list)
    members: dict[str, int] = field(default_factory=dict)


class FakeIpset:
    """In-memory stand-in for the ipset executable.

    Understands the argument vectors SetManager builds and answers with the
    same text the real utility prints. ``after_command`` hooks run after
    every invocation, which lets tests observe intermediate states.
    """

    def __init__(self, version_output: str = "ipset v7.15, protocol version: 7\n"):
        self.version_output = version_output
        self.sets: dict[str, FakeSet] = {}
        self.calls: list[list[str]] = []
        self.rejected_entries: set[str] = set()
        self.fail_commands: dict[str, str] = {}
        self.after_command: list[Callable[["FakeIpset", list[str]], None]] = []

    def __call__(self, command, **kwargs) -> subprocess.CompletedProcess:
        assert kwargs.get("stderr") == subprocess.STDOUT
        args = list(command[1:])
        self.calls.append(args)
        returncode, output = self._dispatch(args)
        for hook in self.after_command:
            hook(self, args)
        return subprocess.CompletedProcess(command, returncode, stdout=output)

    def _error(self, message: str) -> tuple[int, str]:
        return 1, f"ipset v7.15: {message}\n"

    def _dispatch(self, args: list[str]) -> tuple[int, str]:
        verb = args[0]
        if verb in self.fail_commands:
            return self._error(self.fail_commands[verb])
        if verb == "--version":
            return 0, self.version_output
        if verb == "-n":
            return 0, "".join(f"{name}\n" for name in self.sets)
        handler = getattr(self, f"_do_{verb}", None)
        if handler is None:
            return self._error(f"Unknown command: {verb}")
        return handler(args[1:])

    def _missing(self, name: str) -> tuple[int, str]:
        return self._error("The set with the given name does not exist")

    def _do_create(self, args: list[str]) -> tuple[int, str]:
        name, set_type = args[0], args[1]
        exist = "-exist" in args
        tokens = [arg for arg in args[2:] if arg != "-exist"]
        options: dict[str, str] = {}
        extras: list[str] = []
        while tokens:
            token = tokens.pop(0)
            if token in VALUE_OPTIONS:
                options[token] = tokens.pop(0)
                if token in ("netmask", "markmask", "bucketsize", "initval"):
                    extras.extend([token, options[token]])
            else:
                extras.append(token)
        if name in self.sets and not exist:
            return self._error("Set cannot be created: set with the same name already exists")
        if not set_type.startswith("hash:"):
            return self._error(f"Syntax error: typename '{set_type}' is unknown")
        if name not in self.sets:
            self.sets[name] = FakeSet(
                type=set_type,
                family=options["family"],
                hashsize=int(options["hashsize"]),
                maxelem=int(options["maxelem"]),
                timeout=int(options["timeout"]),
                extras=extras,
            )
        return 0, ""

    def _do_flush(self, args: list[str]) -> tuple[int, str]:
        if not args:
            for fake in self.sets.values():
                fake.members.clear()
            return 0, ""
        if args[0] not in self.sets:
            return self._missing(args[0])
        self.sets[args[0]].members.clear()
        return 0, ""

    def _do_add(self, args: list[str]) -> tuple[int, str]:
        name, entry = args[0], args[1]
        if name not in self.sets:
            return self._missing(name)
        if entry in self.rejected_entries:
            return self._error(f"Syntax error: '{entry}' is invalid as number")
        fake = self.sets[name]
        if entry in fake.members and "-exist" not in args:
            return self._error("Element cannot be added to the set: it's already added")
        timeout = fake.timeout
        if "timeout" in args:
            timeout = int(args[args.index("timeout") + 1])
        fake.members[entry] = timeout
        return 0, ""

    def _do_del(self, args: list[str]) -> tuple[int, str]:
        name, entry = args[0], args[1]
        if name not in self.sets:
            return self._missing(name)
        fake = self.sets[name]
        if entry not in fake.members and "-exist" not in args:
            return self._error("Element cannot be deleted from the set: it's not added")
        fake.members.pop(entry, None)
        return 0, ""

    def _do_test(self, args: list[str]) -> tuple[int, str]:
        name, entry = args[0], args[1]
        if name not in self.sets:
            return self._missing(name)
        if entry in self.sets[name].members:
            return 0, f"{entry} is in set {name}.\n"
        return 1, f"ipset v7.15: Warning: {entry} is NOT in set {name}.\n"

    def _do_list(self, args: list[str]) -> tuple[int, str]:
        names = args or list(self.sets)
        chunks = []
        for name in names:
            if name not in self.sets:
                return self._missing(name)
            chunks.append(self.render(name))
        return 0, "\n".join(chunks)

    def _do_destroy(self, args: list[str]) -> tuple[int, str]:
        if not args:
            self.sets.clear()
            return 0, ""
        if args[0] not in self.sets:
            return self._missing(args[0])
        del self.sets[args[0]]
        return 0, ""

    def _do_swap(self, args: list[str]) -> tuple[int, str]:
        first, second = args
        if first not in self.sets or second not in self.sets:
            return self._error("The set with the given name does not exist")
        if self.sets[first].type != self.sets[second].type:
            return self._error("The sets cannot be swapped: their type does not match")
        self.sets[first], self.sets[second] = self.sets[second], self.sets[first]
        return 0, ""

    def render(self, name: str) -> str:
        fake = self.sets[name]
        header = f"family {fake.family} hashsize {fake.hashsize} maxelem {fake.maxelem}"
        if fake.timeout:
            header += f" timeout {fake.timeout}"
        if fake.extras:
            header += " " + " ".join(fake.extras)
        lines = [
            f"Name: {name}",
            f"Type: {fake.type}",
            "Revision: 4",
            f"Header: {header}",
            "Size in memory: 88",
            "References: 0",
            f"Number of entries: {len(fake.members)}",
            "Members:",
        ]
        for entry, timeout in fake.members.items():
            lines.append(f"{entry} timeout {timeout}" if fake.timeout else entry)
        return "\n".join(lines) + "\n"


def fake_which(name: str) -> str | None:
    return IPSET_PATH if name == "ipset" else None


@pytest.fixture
def fake_ipset() -> FakeIpset:
    return FakeIpset()


@pytest.fixture
def manager(fake_ipset: FakeIpset) -> SetManager:
    return SetManager.open(runner=fake_ipset, which=fake_which)
