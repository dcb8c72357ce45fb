"""CLI entry point for monotag."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path

import click

from .config import ConfigError
from .graph import CycleError, build_graph, topo_sort
from .manifest import ManifestError
from .pipeline import confirm_releasables, run_checks, run_release
from .taskrunner import RunReport, TaskGraphError
from .units import discover_units

# Errors a user can act on; anything else is a bug and keeps its traceback.
_USER_ERRORS = (ConfigError, ManifestError, FileNotFoundError, TaskGraphError)


def _emit(report: RunReport, as_json: bool) -> None:
    if as_json:
        click.echo(report.model_dump_json(indent=2))
    else:
        totals = ", ".join(f"{n} {s}" for s, n in report.summary().items() if n)
        click.echo(f"\n{report.name}: {totals or 'no tasks'}")


def _run(fn: Callable[[], RunReport], as_json: bool) -> None:
    try:
        report = fn()
    except TaskGraphError as exc:
        _emit(exc.report, as_json)
        raise click.ClickException(str(exc)) from exc
    except _USER_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(report, as_json)


@click.group()
@click.version_option(package_name="monotag")
def cli() -> None:
    """Tag and release the units of a Python monorepo."""


@cli.command()
@click.option("--dirty", is_flag=True, help="Allow releasing from a dirty working tree.")
@click.option(
    "--skip-remote-checks",
    is_flag=True,
    help="Do not confirm tags on the remote (no pending-release detection).",
)
@click.option("-y", "--yes", is_flag=True, help="Release without asking for confirmation.")
@click.option("--json", "as_json", is_flag=True, help="Print the task report as JSON.")
def release(dirty: bool, skip_remote_checks: bool, yes: bool, as_json: bool) -> None:
    """Tag every unit that changed since its last release."""
    confirm = (lambda units: True) if yes else confirm_releasables
    echo = None if as_json else click.echo
    _run(
        lambda: run_release(
            allow_dirty=dirty,
            check_remote=not skip_remote_checks,
            confirm=confirm,
            echo=echo,
            color=sys.stdout.isatty(),
        ),
        as_json,
    )


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the task report as JSON.")
def lint(as_json: bool) -> None:
    """Run the configured linter in every unit."""
    echo = None if as_json else click.echo
    _run(lambda: run_checks("lint", echo=echo, color=sys.stdout.isatty()), as_json)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the task report as JSON.")
def test(as_json: bool) -> None:
    """Run the configured test command in every unit."""
    echo = None if as_json else click.echo
    _run(lambda: run_checks("test", echo=echo, color=sys.stdout.isatty()), as_json)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print units as JSON.")
def units(as_json: bool) -> None:
    """List discovered units in release order."""
    root = Path.cwd()
    try:
        found = discover_units(root)
        order = topo_sort(build_graph(found))
    except (CycleError, ManifestError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        data = [
            {
                "name": name,
                "path": found[name].path,
                "tag_prefix": found[name].tag_prefix,
                "internal": found[name].is_internal,
                "deps": found[name].deps,
            }
            for name in order
        ]
        click.echo(json.dumps(data, indent=2))
        return

    for name in order:
        unit = found[name]
        flags = " (internal)" if unit.is_internal else ""
        deps = f" <- {', '.join(unit.deps)}" if unit.deps else ""
        click.echo(f"{name}{flags}  [{unit.path}]{deps}")
