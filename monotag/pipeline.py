"""Release pipeline: check → load → sort → converge → confirm → tag → changelog.

This module wires the monotag release process into a task graph:
1. Check that the repository is releasable (clean tree, branch, remote, dist)
2. Optionally lint and test every unit
3. Commit pending changes
4. Load every unit's release state from tags and history
5. Sort units so dependencies are released before their dependents
6. Converge dependencies shared by several units onto one minimum version
7. Ask for confirmation of the units about to be released
8. Per unit, in release order: verify deps, update manifest, commit, tag, push
9. Write the aggregated changelog
10. Finalize

Structural stages stop doing work once anything has failed. Per-unit tag
chains keep going for units that do not depend on a failed unit.
"""

from __future__ import annotations

import functools
import os
import threading
from collections.abc import Callable
from pathlib import Path

import click

from .changelog import write_changelog
from .checks import lint_tasks, unit_test_tasks
from .config import Config, ConfigError, load_config
from .git import Git
from .graph import CycleError, build_graph, topo_sort
from .models import CommonDependency, Unit
from .shell import run, step
from .taskrunner import Executor, Result, Runner, RunReport, Task, TaskFn, TaskID
from .units import common_dependencies, discover_units, load_release_info, set_dependency

ConfirmFn = Callable[[list[Unit]], bool]


class ReleaseRun:
    """Mutable state shared by every task of one release run.

    The run-wide ``failed`` flag and the per-unit failure sets may be read
    and written from any task, so they are guarded by a lock.
    """

    def __init__(
        self,
        root: Path,
        config: Config,
        git: Git,
        units: dict[str, Unit],
        *,
        allow_dirty: bool = False,
        check_remote: bool = True,
        confirm: ConfirmFn | None = None,
    ) -> None:
        self.root = root
        self.config = config
        self.git = git
        self.units = units
        self.allow_dirty = allow_dirty
        self.check_remote = check_remote
        self.confirm = confirm or confirm_releasables
        self.order: list[str] = []
        self.common: list[CommonDependency] = []
        self.load_errors: dict[str, str] = {}
        self.deps_updated = False
        self._lock = threading.Lock()
        self._failed_reason = ""
        self._failed_units: set[str] = set()
        self._blocked_units: set[str] = set()

    @property
    def dist(self) -> Path:
        return self.root / self.config.releaser.dist

    @property
    def failed(self) -> bool:
        with self._lock:
            return bool(self._failed_reason)

    @property
    def reason(self) -> str:
        with self._lock:
            return self._failed_reason

    def fail(self, reason: str) -> None:
        with self._lock:
            if not self._failed_reason:
                self._failed_reason = reason

    def fail_unit(self, unit: Unit, reason: str) -> None:
        with self._lock:
            self._failed_units.add(unit.name)
        self.fail(f"{unit.name}: {reason}")

    def unit_failed(self, unit: Unit) -> bool:
        with self._lock:
            return unit.name in self._failed_units

    def blocked_by(self, unit: Unit) -> str | None:
        """Name of a failed (or itself blocked) dependency of ``unit``."""
        with self._lock:
            bad = self._failed_units | self._blocked_units
        return next((d for d in unit.deps if d in bad), None)

    def block(self, unit: Unit) -> None:
        with self._lock:
            self._blocked_units.add(unit.name)

    def releasable(self) -> list[Unit]:
        """Units needing a release, in release order once sorted."""
        names = self.order or list(self.units)
        return [
            self.units[n]
            for n in names
            if self.units[n].release.needs_release or self.units[n].release.pending_release
        ]


def confirm_releasables(units: list[Unit]) -> bool:
    """List the units about to be released and ask the user to confirm."""
    click.echo("\nUnits to release:")
    for unit in units:
        rel = unit.release
        if rel.pending_release:
            detail = f"{rel.next_release_tag} (pending, push only)"
        elif rel.first_release:
            detail = f"{rel.next_release_tag} (first release)"
        else:
            detail = f"{rel.last_release_tag} -> {rel.next_release_tag}"
        click.echo(f"  {unit.name}: {detail}")
    return click.confirm("Release these units?", default=False)


def _exception_result(exc: Exception) -> Result:
    return Result.failure(f"{type(exc).__name__}: {exc}")


def stage(fn: TaskFn) -> TaskFn:
    """Wrap a structural stage.

    The stage is skipped once the run has failed, and a failing stage marks
    the run failed so later stages are skipped in turn.
    """

    @functools.wraps(fn)
    def wrapper(ex: Executor) -> Result:
        rr: ReleaseRun = ex.context
        if rr.failed:
            return Result.skip(f"skipped after failure: {rr.reason}")
        try:
            result = fn(ex)
        except Exception as exc:  # noqa: BLE001
            result = _exception_result(exc)
        if result.failed:
            rr.fail(f"{ex.task.name}: {result.message}")
        return result

    return wrapper


def unit_step(unit: Unit, fn: Callable[[Executor, ReleaseRun, Unit], Result]) -> TaskFn:
    """Wrap a per-unit step; a failure marks the unit (and the run) failed."""

    def wrapper(ex: Executor) -> Result:
        rr: ReleaseRun = ex.context
        try:
            result = fn(ex, rr, unit)
        except Exception as exc:  # noqa: BLE001
            result = _exception_result(exc).with_desc(unit.name)
        if result.failed:
            rr.fail_unit(unit, f"{ex.task.name}: {result.message}")
        return result

    return wrapper


# Precondition gate


@stage
def check_clean(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    if rr.git.is_dirty("."):
        msg = "project repository is dirty"
        return Result.notice(msg) if rr.allow_dirty else Result.failure(msg)
    return Result.success("project repository clean")


@stage
def check_branch(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    expected = rr.config.git.branch
    current = rr.git.current_branch()
    if current != expected:
        return Result.failure(f"expected branch {expected}, got {current}")
    return Result.success("ok").with_desc(current)


@stage
def check_remote(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    expected_name = rr.config.git.remote_name
    expected_url = rr.config.git.remote_url
    name, url = rr.git.current_remote()
    if expected_url and url != expected_url:
        return Result.failure(f"expected remote {expected_url}, got {url}")
    if name != expected_name:
        return Result.failure(f"expected remote name {expected_name}, got {name}")
    return Result.success("ok").with_desc(f"{name} {url}")


@stage
def check_dist(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    dist = rr.dist
    if dist.exists() and not dist.is_dir():
        return Result.failure("dist is not a directory").with_desc(str(dist))
    try:
        dist.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        return Result.failure(str(exc)).with_desc(str(dist))
    return Result.success("ok").with_desc(str(dist))


@stage
def commit_pending(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    if not rr.git.is_dirty("."):
        return Result.skip("clean")
    rr.git.commit(["-A"], f"chore({rr.root.name}): prepare release")
    return Result.success("changes committed")


# Release state


@stage
def load_units(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    for unit in rr.units.values():
        ex.subtask(unit.label, _load_unit_fn(unit))
    return Result.success(f"loading release info of {len(rr.units)} unit(s)")


def _load_unit_fn(unit: Unit) -> TaskFn:
    def load(ex: Executor) -> Result:
        rr: ReleaseRun = ex.context
        try:
            load_release_info(
                unit,
                rr.git,
                remote=rr.config.git.remote_name,
                check_remote=rr.check_remote,
                initial_version=rr.config.releaser.initial_version,
                units=rr.units,
            )
        except Exception as exc:  # noqa: BLE001
            rr.load_errors[unit.name] = str(exc)
            return Result.failure(f"failed to get release info: {exc}").with_desc(unit.name)

        rel = unit.release
        if unit.is_internal:
            return Result.skip("internal unit, not tagged").with_desc(unit.name)
        if not rel.needs_release:
            return Result.skip("no release needed").with_desc(f"latest: {rel.last_release_tag}")
        if rel.pending_release:
            return Result.skip(
                f"pending release {unit.last_version} -> {unit.next_version}"
            ).with_desc(unit.name)
        return Result.success(f"needs release {unit.next_version}").with_desc(unit.name)

    return load


@stage
def units_loaded(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    if rr.load_errors:
        return Result.failure("failed to load units release info").with_desc(
            ", ".join(sorted(rr.load_errors))
        )
    return Result.success("units release info loaded")


@stage
def sort_units(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    try:
        rr.order = topo_sort(build_graph(rr.units))
    except CycleError as exc:
        return Result.failure(f"failed to sort units: {exc}")
    return Result.success("sorted releasable units").with_desc(" -> ".join(rr.order))


# Common dependencies


@stage
def check_common_deps(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    rr.common = common_dependencies(rr.units)
    diverged = sum(1 for dep in rr.common if dep.diverged)
    return Result.success(f"loaded common deps {len(rr.common)}").with_desc(
        f"{diverged} diverged"
    )


@stage
def update_common_deps(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    for dep in rr.common:
        if not dep.diverged:
            continue
        for name in dep.used_by:
            unit = rr.units[name]
            ex.subtask(unit.label, unit_step(unit, _converge_fn(dep)))
    return Result.success(f"checked common deps {len(rr.common)}")


def _converge_fn(dep: CommonDependency) -> Callable[[Executor, ReleaseRun, Unit], Result]:
    def converge(ex: Executor, rr: ReleaseRun, unit: Unit) -> Result:
        spec = f"{dep.name}>={dep.max_version}"
        if unit.is_internal:
            return Result.skip("internal unit").with_desc(spec)
        if unit.release.pending_release:
            return Result.skip("pending release").with_desc(spec)
        if not set_dependency(unit, dep.name, dep.max_version):
            return Result.skip("up to date").with_desc(spec)
        rr.deps_updated = True
        return Result.success("updated").with_desc(spec)

    return converge


@stage
def common_deps_summary(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    if not rr.deps_updated:
        return Result.skip("no deps updated")
    return Result.success("deps updated")


# Confirmation


@stage
def count_releasable(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    count = len(rr.releasable())
    if count == 0:
        return Result.success("no units to release")
    return Result.success(f"{count} unit" if count == 1 else f"{count} units")


@stage
def confirm_release(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    units = rr.releasable()
    if not units:
        return Result.skip("nothing to release")
    if not rr.confirm(units):
        return Result.failure("user did not confirm release")
    return Result.success("continue with release")


# Tagging


@stage
def tag_units(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    prev: TaskID | None = None
    for name in rr.order:
        prev = add_tag_chain(ex, rr.units[name], prev)
    return Result.success("added unit tag tasks")


def add_tag_chain(ex: Executor, unit: Unit, after: TaskID | None) -> TaskID:
    """Spawn the tag subtasks of one unit and return the id of the last one.

    Units that will not be tagged get only the check, tag and passed steps,
    each reporting why nothing happens.
    """
    label = unit.label
    rel = unit.release
    prev = ex.subtask(f"{label}: check need release", unit_step(unit, _check_need_release), after)
    if rel.needs_release and not rel.pending_release and not unit.is_internal:
        for step_name, fn in (
            ("verify deps", _verify_deps),
            ("update manifest", _update_manifest),
            ("restore manifest", _restore_manifest),
            ("commit", _commit_unit),
        ):
            prev = ex.subtask(f"{label}: {step_name}", unit_step(unit, fn), prev)
    prev = ex.subtask(f"{label}: tag", unit_step(unit, _tag_unit), prev)
    return ex.subtask(f"{label}: passed", _passed_fn(unit), prev)


def _active(rr: ReleaseRun, unit: Unit) -> bool:
    return not rr.unit_failed(unit) and rr.blocked_by(unit) is None


def _check_need_release(ex: Executor, rr: ReleaseRun, unit: Unit) -> Result:
    rel = unit.release
    if unit.is_internal:
        return Result.skip("internal unit, not tagged").with_desc(unit.name)
    if not rel.needs_release:
        return Result.skip(rel.last_release_tag).with_desc(unit.name)
    blocker = rr.blocked_by(unit)
    if blocker is not None:
        rr.block(unit)
        return Result.skip(f"dependency {blocker} failed").with_desc(unit.name)
    if rel.pending_release:
        return Result.skip(
            f"pending release {unit.last_version} -> {unit.next_version}"
        ).with_desc(unit.name)
    if rel.first_release:
        return Result.success(rel.next_release_tag).with_desc(unit.name)
    return Result.success(
        f"{unit.tag_prefix}{unit.last_version} -> {unit.next_version}"
    ).with_desc(unit.name)


def _verify_deps(ex: Executor, rr: ReleaseRun, unit: Unit) -> Result:
    """Make sure every internal dependency being released is already tagged.

    Released dependencies are pointed at their local directory for the
    manifest validation that follows.
    """
    if not _active(rr, unit):
        return Result.skip("deps failed")
    local: list[str] = []
    for name in unit.deps:
        dep = rr.units[name]
        if dep.is_internal or not dep.release.needs_release:
            continue
        tag = dep.release.next_release_tag
        if not rr.git.tag_exists(tag):
            return Result.failure(f"tag {tag} does not exist").with_desc(unit.name)
        unit.manifest.add_local_source(dep.name, os.path.relpath(dep.dir, unit.dir))
        local.append(dep.name)
    if not local:
        return Result.success("ok")
    return Result.success("ok").with_desc(f"local: {', '.join(local)}")


def _validate(rr: ReleaseRun, unit: Unit) -> None:
    command = rr.config.releaser.validate_command
    if command:
        run(*command, cwd=unit.dir)


def _update_manifest(ex: Executor, rr: ReleaseRun, unit: Unit) -> Result:
    if not _active(rr, unit):
        return Result.skip("deps failed")
    if not unit.manifest.dirty:
        return Result.skip("manifest unchanged")
    unit.manifest.save()
    _validate(rr, unit)
    return Result.success("manifest updated")


def _restore_manifest(ex: Executor, rr: ReleaseRun, unit: Unit) -> Result:
    if not _active(rr, unit):
        return Result.skip("deps failed")
    if not unit.manifest.restore_sources():
        return Result.skip("no local sources")
    unit.manifest.save()
    _validate(rr, unit)
    return Result.success("local sources removed")


def _commit_unit(ex: Executor, rr: ReleaseRun, unit: Unit) -> Result:
    if not _active(rr, unit):
        return Result.skip("deps failed")
    if not rr.git.is_dirty(unit.path):
        return Result.skip("git path clean")
    rr.git.commit([unit.path], f"chore({unit.label}): prepare release {unit.next_version}")
    return Result.success("changes committed")


def _tag_unit(ex: Executor, rr: ReleaseRun, unit: Unit) -> Result:
    rel = unit.release
    if unit.is_internal or not rel.needs_release:
        return Result.skip("no tag needed").with_desc(f"latest tag: {rel.last_release_tag}")
    if not _active(rr, unit):
        return Result.skip("deps failed")
    if rel.pending_release:
        # The tag exists locally; only publish it.
        rr.git.push_tags()
        return Result.skip("tag already exists").with_desc(f"pushed {rel.next_release_tag}")

    rr.git.create_tag(
        rel.next_release_tag, unit.next_version, sign=rr.config.git.sign_tags
    )
    rr.git.push()
    rr.git.push_tags()
    return Result.success(f"tag {rel.next_release_tag} created")


def _passed_fn(unit: Unit) -> TaskFn:
    def passed(ex: Executor) -> Result:
        rr: ReleaseRun = ex.context
        if rr.unit_failed(unit):
            return Result.failure("previous task did not pass").with_desc(unit.name)
        blocker = rr.blocked_by(unit)
        if blocker is not None and unit.release.needs_release:
            rr.block(unit)
            return Result.skip(f"blocked by failed dependency {blocker}").with_desc(unit.name)
        if unit.release.needs_release:
            return Result.success("ok")
        return Result.info("skip")

    return passed


# Changelog and finish


@stage
def changelog(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    root_unit: Unit | None = None
    subunits: list[Unit] = []
    for name in rr.order or list(rr.units):
        unit = rr.units[name]
        if not unit.release.needs_release or unit.changelog is None or unit.changelog.empty:
            continue
        if unit.is_root:
            root_unit = unit
        else:
            subunits.append(unit)
    path = write_changelog(rr.dist, root_unit, subunits)
    return Result.success("changelog saved").with_desc(str(path))


def finalize(ex: Executor) -> Result:
    rr: ReleaseRun = ex.context
    if rr.failed:
        return Result.failure("release failed").with_desc(rr.reason)
    return Result.success("release completed")


def build_release(rr: ReleaseRun, runner: Runner) -> Runner:
    """Register every stage of the release on ``runner``."""
    prev = runner.add("starting releaser", check_clean)
    prev = runner.add_with_dependency(prev, "checking git branch", check_branch)
    prev = runner.add_with_dependency(prev, "checking git remote", check_remote)
    prev = runner.add_with_dependency(prev, "checking dist dir", check_dist)

    checks: list[Task] = [
        *lint_tasks(rr.units, rr.config.linter),
        *unit_test_tasks(rr.units, rr.config.tests),
    ]
    for task in checks:
        task.fn = stage(task.fn)
        prev = runner.add_task(task.depends(prev))

    prev = runner.add_with_dependency(prev, "commit", commit_pending)
    prev = runner.add_with_dependency(prev, "load release info", load_units)
    prev = runner.add_with_dependency(prev, "units", units_loaded)
    prev = runner.add_with_dependency(prev, "sort units", sort_units)
    prev = runner.add_with_dependency(prev, "check common deps", check_common_deps)
    prev = runner.add_with_dependency(prev, "update common deps", update_common_deps)
    prev = runner.add_with_dependency(prev, "common deps summary", common_deps_summary)
    prev = runner.add_with_dependency(prev, "check units to release", count_releasable)
    prev = runner.add_with_dependency(prev, "confirm releasable units", confirm_release)
    prev = runner.add_with_dependency(prev, "tag units", tag_units)
    prev = runner.add_with_dependency(prev, "changelog", changelog)
    runner.add_with_dependency(prev, "finalizing", finalize)
    return runner


def run_release(
    root: Path | None = None,
    *,
    allow_dirty: bool = False,
    check_remote: bool = True,
    confirm: ConfirmFn | None = None,
    git: Git | None = None,
    echo: Callable[[str], None] | None = click.echo,
    color: bool = False,
) -> RunReport:
    """Execute the full release pipeline.

    Args:
        root: Repository root; defaults to the current directory.
        allow_dirty: Downgrade a dirty working tree from failure to notice.
        check_remote: Confirm tags on the remote to detect pending releases.
        confirm: Confirmation policy; defaults to an interactive prompt.
        git: Version-control backend; defaults to git in ``root``.
        echo: Where task results are printed as they complete.
        color: Colour task tiers in the printed output.

    Returns:
        The report of every task.

    Raises:
        ConfigError: If configuration is invalid or releasing is disabled.
        TaskGraphError: If any task failed.
    """
    root = (root or Path.cwd()).resolve()
    config = load_config(root)
    if not config.releaser.enabled:
        raise ConfigError("releasing is disabled")

    step(f"Releasing {root.name}")
    units = discover_units(root)
    rr = ReleaseRun(
        root,
        config,
        git or Git(root),
        units,
        allow_dirty=allow_dirty,
        check_remote=check_remote,
        confirm=confirm,
    )
    runner = build_release(rr, Runner("release", rr, echo=echo, color=color))
    return runner.run()


def run_checks(
    kind: str,
    root: Path | None = None,
    *,
    echo: Callable[[str], None] | None = click.echo,
    color: bool = False,
) -> RunReport:
    """Run the lint or test fan-out on its own.

    Args:
        kind: "lint" or "test".
    """
    root = (root or Path.cwd()).resolve()
    config = load_config(root)
    units = discover_units(root)
    step(f"Running {kind} for {len(units)} unit(s)")
    if kind == "lint":
        tasks = lint_tasks(units, config.linter)
    elif kind == "test":
        tasks = unit_test_tasks(units, config.tests)
    else:
        raise ValueError(f"unknown check kind: {kind}")
    runner = Runner(kind, echo=echo, color=color)
    for task in tasks:
        runner.add_task(task)
    return runner.run()
