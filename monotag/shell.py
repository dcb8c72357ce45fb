"""Shell utilities.

Thin wrappers around subprocess calls plus output formatting helpers shared
by the release pipeline and the CLI.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

import click


class CommandError(RuntimeError):
    """A command exited non-zero or could not be started."""

    def __init__(self, args: list[str], returncode: int, output: str) -> None:
        self.args_list = args
        self.returncode = returncode
        self.output = output
        detail = output.strip().splitlines()[-1] if output.strip() else ""
        msg = f"`{' '.join(args)}` exited with {returncode}"
        super().__init__(f"{msg}: {detail}" if detail else msg)


def run(*args: str, cwd: Path | str | None = None, check: bool = True) -> str:
    """Run a command and return its combined stdout/stderr.

    Args:
        *args: Command and arguments (e.g., "uv", "lock").
        cwd: Working directory for the command.
        check: If True (default), raise CommandError on non-zero exit.

    Returns:
        Stripped combined output of the command.

    Raises:
        CommandError: On non-zero exit (when check is True) or if the
            executable does not exist.
    """
    try:
        result = subprocess.run(
            list(args),
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise CommandError(list(args), 127, str(exc)) from exc
    output = (result.stdout + result.stderr).strip()
    if check and result.returncode != 0:
        raise CommandError(list(args), result.returncode, output)
    return output


def git(*args: str, cwd: Path | str | None = None, check: bool = True) -> str:
    """Run a git command and return stdout.

    Args:
        *args: Arguments to pass to git (e.g., "status", "--porcelain").
        cwd: Repository directory to run in.
        check: If True (default), raise on non-zero exit. Set to False
               for commands that may legitimately fail (e.g., tag lookup).
    """
    try:
        result = subprocess.run(
            ["git", *args], cwd=cwd, capture_output=True, text=True, check=False
        )
    except FileNotFoundError as exc:
        raise CommandError(["git", *args], 127, str(exc)) from exc
    if check and result.returncode != 0:
        raise CommandError(["git", *args], result.returncode, result.stderr)
    return result.stdout.strip()


def step(msg: str) -> None:
    """Print a visually distinct step header."""
    click.echo(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")
