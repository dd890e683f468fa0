"""Parsers for the text the ipset utility prints.

Everything that depends on the exact output grammar of ``ipset`` lives in
this module, so a change in the utility's formatting only touches here.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import NamedTuple

VERSION_PATTERN = re.compile(r"v[0-9]+\.[0-9]+")
MEMBERS_HEADER_PATTERN = re.compile(r"^(?:.*\n)*?Members:\n", re.MULTILINE)
NEGATION_PATTERN = re.compile(r"\bis NOT in set\b")
HEADER_FIELD_PATTERN = re.compile(r"^(?P<key>[A-Za-z][A-Za-z ]*):[ \t]*(?P<value>.*)$")

# Header options followed by a value; any other token is a bare flag such as "counters".
_VALUE_OPTIONS = {
    "family",
    "hashsize",
    "maxelem",
    "timeout",
    "netmask",
    "markmask",
    "bucketsize",
    "initval",
}
# Covered by dedicated SetInfo fields; everything else is an extra create option.
_CORE_OPTIONS = {"family", "hashsize", "maxelem", "timeout"}


class IpsetVersion(NamedTuple):
    major: int
    minor: int
    patch: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @classmethod
    def parse(cls, value: str) -> "IpsetVersion":
        parts = value.lstrip("v").split(".")
        if len(parts) != 3 or not all(part.isdigit() for part in parts):
            raise ValueError(f"Not a dotted-tri version: {value}")
        major, minor, patch = (int(part) for part in parts)
        return cls(major, minor, patch)


MINIMUM_VERSION = IpsetVersion(6, 0, 0)


def find_version_token(output: str) -> str | None:
    """Return the first ``vX.Y`` token in ``ipset --version`` output."""
    match = VERSION_PATTERN.search(output)
    return match.group(0) if match else None


def parse_version(output: str) -> IpsetVersion:
    token = find_version_token(output)
    if token is None:
        raise ValueError(f"no ipset version found in string: {output.strip()}")
    # The utility reports major.minor only.
    return IpsetVersion.parse(f"{token}.0")


def is_supported(version: IpsetVersion, minimum: IpsetVersion = MINIMUM_VERSION) -> bool:
    return version >= minimum


def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_names(output: str) -> list[str]:
    return _lines(output)


def strip_members_header(output: str) -> str:
    """Drop the list preamble up to and including the ``Members:`` line.

    Member lines never precede the header, so the match is tried at the
    start of the output only. Output without a header is returned unchanged.
    """
    match = MEMBERS_HEADER_PATTERN.match(output)
    if match is None:
        return output
    return output[match.end():]


def parse_members(output: str) -> list[str]:
    return _lines(strip_members_header(output))


def reports_absent(output: str) -> bool:
    """True when ``ipset test`` output says "<entry> is NOT in set <name>"."""
    return NEGATION_PATTERN.search(output) is not None


def split_option(option: str | None) -> list[str]:
    if not option:
        return []
    return shlex.split(option)


@dataclass(frozen=True)
class Member:
    entry: str
    timeout: int | None = None
    options: tuple[str, ...] = ()


def parse_member_line(line: str) -> Member:
    tokens = shlex.split(line)
    if not tokens:
        raise ValueError("Empty member line")
    entry, rest = tokens[0], tokens[1:]
    timeout = None
    options: list[str] = []
    index = 0
    while index < len(rest):
        token = rest[index]
        if token == "timeout" and index + 1 < len(rest) and rest[index + 1].isdigit():
            timeout = int(rest[index + 1])
            index += 2
            continue
        options.append(token)
        index += 1
    return Member(entry=entry, timeout=timeout, options=tuple(options))


@dataclass(frozen=True)
class SetInfo:
    name: str
    type: str
    revision: int | None = None
    family: str | None = None
    hash_size: int | None = None
    max_elements: int | None = None
    timeout: int = 0
    entries: int | None = None
    header_flags: tuple[str, ...] = field(default_factory=tuple)
    extra_options: tuple[str, ...] = field(default_factory=tuple)


def _optional_int(value: str | None) -> int | None:
    if value is None or not value.strip().isdigit():
        return None
    return int(value.strip())


def parse_header_options(header: str) -> tuple[dict[str, str], list[str], list[str]]:
    """Split a ``Header:`` line into option values, bare flags and the
    ordered create tokens not covered by the core size/family/timeout fields."""
    values: dict[str, str] = {}
    flags: list[str] = []
    extras: list[str] = []
    tokens = header.split()
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token in _VALUE_OPTIONS and index + 1 < len(tokens):
            values[token] = tokens[index + 1]
            if token not in _CORE_OPTIONS:
                extras.extend(tokens[index : index + 2])
            index += 2
            continue
        flags.append(token)
        extras.append(token)
        index += 1
    return values, flags, extras


def parse_set_info(output: str) -> SetInfo:
    """Parse the ``ipset list <name>`` preamble into a :class:`SetInfo`."""
    fields: dict[str, str] = {}
    for line in output.splitlines():
        if line == "Members:":
            break
        match = HEADER_FIELD_PATTERN.match(line)
        if match:
            fields[match.group("key")] = match.group("value").strip()

    if "Name" not in fields or "Type" not in fields:
        raise ValueError("ipset list output has no Name/Type header")

    values, flags, extras = parse_header_options(fields.get("Header", ""))
    return SetInfo(
        name=fields["Name"],
        type=fields["Type"],
        revision=_optional_int(fields.get("Revision")),
        family=values.get("family"),
        hash_size=_optional_int(values.get("hashsize")),
        max_elements=_optional_int(values.get("maxelem")),
        timeout=_optional_int(values.get("timeout")) or 0,
        entries=_optional_int(fields.get("Number of entries")),
        header_flags=tuple(flags),
        extra_options=tuple(extras),
    )
