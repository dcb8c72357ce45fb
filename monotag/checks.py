"""Lint and test tasks.

Both produce a header task reporting whether the check is enabled, then one
task per unit that runs the configured command inside the unit directory.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from .config import LinterConfig, UnitTestsConfig
from .models import Unit
from .shell import CommandError, run
from .taskrunner import Executor, Result, Task, TaskFn

# pytest-cov terminal report: "TOTAL    120     6    95%"
_COVERAGE_RE = re.compile(r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%\s*$", re.MULTILINE)


def _task_name(unit: Unit) -> str:
    return unit.tag_prefix.rstrip("/") or unit.name


def lint_tasks(units: Mapping[str, Unit], config: LinterConfig) -> list[Task]:
    if not config.enabled:
        return [Task(name="linting", fn=lambda ex: Result.skip("linting disabled"))]

    tasks = [Task(name="linting", fn=lambda ex: Result.success("linting enabled"))]
    for unit in units.values():
        tasks.append(Task(name=_task_name(unit), fn=_lint_fn(unit, config.command)))
    return tasks


def _lint_fn(unit: Unit, command: list[str]) -> TaskFn:
    def lint(ex: Executor) -> Result:
        try:
            run(*command, cwd=unit.dir)
        except CommandError as exc:
            if exc.output:
                ex.echo(exc.output)
            return Result.failure(str(exc)).with_desc(unit.name)
        return Result.success("ok").with_desc(unit.name)

    return lint


def unit_test_tasks(units: Mapping[str, Unit], config: UnitTestsConfig) -> list[Task]:
    if not config.enabled:
        return [Task(name="tests", fn=lambda ex: Result.skip("tests disabled"))]

    tasks = [Task(name="tests", fn=lambda ex: Result.success("tests enabled"))]
    for unit in units.values():
        tasks.append(Task(name=_task_name(unit), fn=_unit_test_fn(unit, config.command)))
    return tasks


def _unit_test_fn(unit: Unit, command: list[str]) -> TaskFn:
    def run_tests(ex: Executor) -> Result:
        try:
            out = run(*command, cwd=unit.dir)
        except CommandError as exc:
            if exc.output:
                ex.echo(exc.output)
            return Result.failure(str(exc)).with_desc(unit.name)
        return coverage_result(out).with_desc(unit.name)

    return run_tests


def parse_coverage(output: str) -> float | None:
    """Total coverage percentage from a pytest-cov report, if present."""
    matches = _COVERAGE_RE.findall(output)
    return float(matches[-1]) if matches else None


def coverage_result(output: str) -> Result:
    """Grade a passing test run by its coverage.

    Low coverage never fails the run; it only lowers the reported tier.
    """
    cov = parse_coverage(output)
    if cov is None:
        return Result.success("passed")
    label = f"coverage[ {f'{cov:.2f}%':<8}]"
    if cov >= 100.0:
        return Result.success(f"{label}: full")
    if cov >= 90.0:
        return Result.success(f"{label}: high")
    if cov >= 75.0:
        return Result.info(f"{label}: moderate")
    if cov >= 50.0:
        return Result.notice(f"{label}: low")
    if cov > 0.0:
        return Result.warn(f"{label}: very-low")
    return Result.warn("coverage[ 0%      ]: no coverage")
