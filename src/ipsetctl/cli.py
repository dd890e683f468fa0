from __future__ import annotations

import logging
from typing import IO, Any, Iterable, Iterator, Mapping

import click
from pydantic import ValidationError

from . import parsing, version_with_commit
from .errors import IpsetError
from .manager import SetManager, SetParams
from .settings import Settings


class AbbreviatingGroup(click.Group):
    """A Click group that allows commands to be abbreviated to unique prefixes.

    For example, 'cr' resolves to 'create' and 'ref' to 'refresh', while 'd'
    is ambiguous between 'del' and 'destroy' and raises an error.
    """

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        cmd_name = args[0] if args else None
        if cmd_name is None:
            return None, None, args

        cmd = self.get_command(ctx, cmd_name)
        if cmd is not None:
            return cmd_name, cmd, args[1:]

        matches = [name for name in self.list_commands(ctx) if name.startswith(cmd_name)]

        if len(matches) == 1:
            return matches[0], self.get_command(ctx, matches[0]), args[1:]
        elif len(matches) > 1:
            ctx.fail(f"Ambiguous command '{cmd_name}': could be {', '.join(sorted(matches))}")

        return super().resolve_command(ctx, args)


def _load_settings(overrides: Mapping[str, Any]) -> Settings:
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc


def open_manager(settings: Settings) -> SetManager:
    return SetManager.open(settings.executable, serialize_refresh=settings.serialize_refresh)


def _settings(ctx: click.Context) -> Settings:
    overrides = ctx.find_root().obj or {}
    settings = _load_settings(overrides)
    logging.basicConfig(
        level=settings.log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return settings


def _manager(ctx: click.Context, settings: Settings | None = None) -> SetManager:
    if settings is None:
        settings = _settings(ctx)
    try:
        manager = open_manager(settings)
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.call_on_close(manager.close)
    return manager


def _iter_entries(lines: Iterable[str]) -> Iterator[str]:
    """Yield entries from text lines, skipping blanks and ``#`` comments."""
    for line in lines:
        entry = line.split("#", 1)[0].strip()
        if entry:
            yield entry


@click.group(cls=AbbreviatingGroup)
@click.version_option(version=version_with_commit(), package_name="ipsetctl")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (default from settings).",
)
@click.option("--executable", help="ipset executable to run (default from settings).")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, executable: str | None) -> None:
    """Manage ipset hash sets."""
    overrides: dict[str, object] = {}
    if log_level:
        overrides["log_level"] = log_level.upper()
    if executable:
        overrides["executable"] = executable
    ctx.obj = overrides


@cli.command()
@click.pass_context
def version(ctx: click.Context) -> None:
    """Show the ipsetctl version and the detected ipset version."""
    click.echo(version_with_commit())
    settings = _settings(ctx)
    try:
        manager = open_manager(settings)
    except IpsetError as exc:
        click.echo(f"ipset unavailable: {exc}")
        return
    detected = manager.detected_version
    manager.close()
    click.echo(f"ipset {detected}" if detected else "ipset version unknown")


@cli.command()
@click.argument("name")
@click.argument("hash_type", metavar="TYPE")
@click.option("--family", type=click.Choice(["inet", "inet6"]), help="Address family.")
@click.option("--hashsize", type=int, help="Initial hash size.")
@click.option("--maxelem", type=int, help="Maximum number of elements.")
@click.option("--timeout", type=int, default=0, show_default=True, help="Default entry timeout, 0 is permanent.")
@click.option("--exist", is_flag=True, help="Do not fail if the set already exists.")
@click.option(
    "--option",
    "options",
    multiple=True,
    help='Extra create option, e.g. "counters" or "netmask 24". Repeatable.',
)
@click.pass_context
def create(
    ctx: click.Context,
    name: str,
    hash_type: str,
    family: str | None,
    hashsize: int | None,
    maxelem: int | None,
    timeout: int,
    exist: bool,
    options: tuple[str, ...],
) -> None:
    """Create (and empty) a hash set."""
    settings = _settings(ctx)
    try:
        params = SetParams(
            hash_family=family or settings.hash_family,
            hash_size=hashsize or settings.hash_size,
            max_elements=maxelem or settings.max_elements,
            timeout=timeout,
            exist=exist,
            extra_options=tuple(token for option in options for token in parsing.split_option(option)),
        )
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc
    manager = _manager(ctx, settings)
    try:
        ipset = manager.create(name, hash_type, params)
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created set {ipset.name} ({ipset.hash_type}, family {ipset.hash_family})")


@cli.command()
@click.argument("name")
@click.argument("entries", nargs=-1, required=True)
@click.option("--timeout", type=int, default=0, show_default=True, help="Entry timeout, 0 is permanent.")
@click.option("--option", "option", help="Extra entry option, e.g. nomatch.")
@click.pass_context
def add(ctx: click.Context, name: str, entries: tuple[str, ...], timeout: int, option: str | None) -> None:
    """Add entries to a set."""
    manager = _manager(ctx)
    try:
        for entry in entries:
            manager.add(name, entry, timeout, option)
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("del")
@click.argument("name")
@click.argument("entries", nargs=-1, required=True)
@click.pass_context
def delete(ctx: click.Context, name: str, entries: tuple[str, ...]) -> None:
    """Delete entries from a set. Missing entries are ignored."""
    manager = _manager(ctx)
    try:
        for entry in entries:
            manager.delete(name, entry)
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.argument("name")
@click.argument("entry")
@click.pass_context
def test(ctx: click.Context, name: str, entry: str) -> None:
    """Test whether ENTRY is in a set. Exits with status 2 when it is not."""
    manager = _manager(ctx)
    try:
        present = manager.test(name, entry)
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc
    if present:
        click.echo(f"{entry} is in set {name}")
        return
    click.echo(f"{entry} is NOT in set {name}")
    ctx.exit(2)


@cli.command("list")
@click.argument("name", required=False)
@click.pass_context
def list_(ctx: click.Context, name: str | None) -> None:
    """List set members, or all set names when NAME is omitted."""
    manager = _manager(ctx)
    try:
        lines = manager.list(name) if name else manager.names()
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc
    for line in lines:
        click.echo(line)


@cli.command()
@click.argument("name", required=False)
@click.pass_context
def flush(ctx: click.Context, name: str | None) -> None:
    """Remove all entries from a set, or from every set when NAME is omitted."""
    manager = _manager(ctx)
    try:
        manager.flush(name)
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.argument("name", required=False)
@click.option("--all", "all_sets", is_flag=True, help="Destroy every set.")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation with --all.")
@click.pass_context
def destroy(ctx: click.Context, name: str | None, all_sets: bool, yes: bool) -> None:
    """Destroy a set, or every set with --all."""
    if name and all_sets:
        raise click.UsageError("Give either NAME or --all, not both.")
    if not name and not all_sets:
        raise click.UsageError("Missing argument 'NAME' (or use --all).")
    if all_sets and not yes:
        click.confirm("Destroy every ipset set?", abort=True)

    manager = _manager(ctx)
    try:
        if all_sets:
            manager.destroy_all()
        else:
            manager.destroy(name)
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.argument("from_name", metavar="FROM")
@click.argument("to_name", metavar="TO")
@click.pass_context
def swap(ctx: click.Context, from_name: str, to_name: str) -> None:
    """Swap the contents of two compatible sets."""
    manager = _manager(ctx)
    try:
        manager.swap(from_name, to_name)
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.argument("name")
@click.argument("sources", nargs=-1, type=click.File("r"))
@click.option("--strict", is_flag=True, help="Exit with an error if any entry was rejected.")
@click.pass_context
def refresh(ctx: click.Context, name: str, sources: tuple[IO[str], ...], strict: bool) -> None:
    """Replace the members of set NAME with the entries read from SOURCES.

    Entries are read one per line from each file (stdin when none is
    given); blank lines and '#' comments are ignored. The set is swapped in
    one step, so it is never seen empty or half loaded.
    """
    if not sources:
        sources = (click.get_text_stream("stdin"),)
    entries: list[str] = []
    for source in sources:
        entries.extend(_iter_entries(source))

    manager = _manager(ctx)
    try:
        ipset = manager.get(name)
        result = manager.refresh(ipset, entries)
    except IpsetError as exc:
        raise click.ClickException(str(exc)) from exc

    for entry, detail in result.failed.items():
        message = f"Warning: failed to add {entry}"
        if detail:
            message += f": {detail}"
        click.echo(message, err=True)
    click.echo(f"Refreshed set {name} with {len(result.loaded)} entries")
    if strict and result.failed:
        raise click.ClickException(f"{len(result.failed)} entries could not be added")
