"""Unit discovery and per-unit release state.

Discovers the units of the workspace, then works out for each of them what
its last and next release tags are. This covers first releases, pending
releases, version bumps from history, and VERSION overrides.
"""

from __future__ import annotations

import glob
from collections.abc import Mapping
from pathlib import Path

from packaging.version import Version

from .changelog import Category, Changelog, classify_history
from .git import Git
from .manifest import Manifest
from .models import CommonDependency, Unit
from .toml import get_workspace_member_globs, has_project, load_pyproject
from .versions import (
    ZERO_VERSION,
    Bump,
    bump_tag,
    compare_versions,
    is_valid_tag,
    next_release_tag,
    read_version_override,
    sort_tags,
)

INTERNAL_SEGMENT = "internal"


def is_internal(name: str, path: str) -> bool:
    """Whether a unit lives in an "internal" namespace.

    Examples:
        ("acme-internal-utils", "packages/utils") → True
        ("acme-utils", "internal/utils") → True
        ("acme-internals", "packages/internals") → False
    """
    return INTERNAL_SEGMENT in name.split("-") or INTERNAL_SEGMENT in Path(path).parts


def discover_units(root: Path) -> dict[str, Unit]:
    """Scan the workspace and discover all units.

    The root pyproject.toml is a unit when it has a [project] table. Other
    units come from [tool.uv.workspace].members. Internal dependencies are
    resolved once every unit is known.

    Returns:
        Map of unit name to Unit, in discovery order.
    """
    root = root.resolve()
    pyproject = root / "pyproject.toml"
    if not pyproject.exists():
        raise FileNotFoundError(f"No pyproject.toml found in {root}")
    root_doc = load_pyproject(pyproject)

    unit_dirs: list[Path] = [root] if has_project(root_doc) else []
    for pattern in get_workspace_member_globs(root_doc):
        for match in sorted(glob.glob(str(root / pattern))):
            p = Path(match).resolve()
            if p != root and (p / "pyproject.toml").exists() and p not in unit_dirs:
                unit_dirs.append(p)

    # First pass: identity and manifest of every unit
    units: dict[str, Unit] = {}
    for d in unit_dirs:
        manifest = Manifest(d / "pyproject.toml")
        rel = d.relative_to(root).as_posix()
        prefix = "" if d == root else f"{rel}/"
        name = manifest.name
        units[name] = Unit(
            name=name,
            path=rel,
            dir=d,
            tag_prefix=prefix,
            is_internal=is_internal(name, rel),
            manifest=manifest,
        )

    # Second pass: keep only deps that are other units
    for unit in units.values():
        unit.deps = [
            dep.name
            for dep in unit.manifest.dependencies()
            if dep.name in units and dep.name != unit.name
        ]

    return units


def nested_unit_paths(unit: Unit, units: Mapping[str, Unit]) -> list[str]:
    """Directories of other units located inside ``unit``'s directory.

    Their history belongs to them, so it is excluded from ``unit``'s log.
    """
    base = "" if unit.path == "." else unit.path.rstrip("/") + "/"
    return sorted(
        other.path
        for other in units.values()
        if other.name != unit.name
        and other.path != "."
        and other.path.startswith(base)
    )


def load_release_info(
    unit: Unit,
    git: Git,
    *,
    remote: str,
    check_remote: bool = True,
    initial_version: str = "v0.1.0",
    units: Mapping[str, Unit] | None = None,
) -> None:
    """Work out ``unit``'s release state from its tags and history.

    0. Internal units are never tagged.
    1. No tag yet: first release at the VERSION override or
       ``initial_version``.
    2. Newest tag on the remote (or remote checks off): classify history
       since that tag and bump accordingly.
    3. Newest tag only local: the release is pending. That tag stays the
       next tag and the newest remote-confirmed tag becomes the last one;
       with none confirmed the baseline v0.0.0 is used.

    Finally a VERSION override strictly greater than the computed candidate
    replaces it.

    Raises:
        GitError: If tags or history cannot be read.
        InvalidVersionError: If one of the unit's release tags is malformed.
    """
    if unit.is_internal:
        unit.mark_internal()
        return

    prefix = unit.tag_prefix
    override = read_version_override(unit.dir)
    tags = sort_tags(git.list_tags(f"{prefix}*"), prefix)

    if not tags:
        unit.mark_first_release(override or initial_version)
        _finish(unit, override)
        return

    newest = tags[-1]
    unit.release.last_release_tag = newest

    if not check_remote or git.remote_tag_exists(remote, newest):
        unit.release.next_release_tag_remote_exists = check_remote
        _load_changelog(unit, git, units, compute_bump=True)
        _finish(unit, override)
        return

    unit.mark_pending(newest)
    unit.release.last_release_tag = ""
    for tag in reversed(tags[:-1]):
        if git.remote_tag_exists(remote, tag):
            unit.release.last_release_tag = tag
            break
    if not unit.release.last_release_tag:
        # Local tags exist but none reached the remote. The pending tag
        # remains authoritative, so this is not marked a first release.
        unit.release.last_release_tag = f"{prefix}{ZERO_VERSION}"

    _load_changelog(unit, git, units, compute_bump=False)
    _finish(unit, override)


def _load_changelog(
    unit: Unit,
    git: Git,
    units: Mapping[str, Unit] | None,
    *,
    compute_bump: bool,
) -> None:
    rel = unit.release
    to_ref = rel.next_release_tag if rel.pending_release else "HEAD"
    zero = f"{unit.tag_prefix}{ZERO_VERSION}"
    from_tag = None if rel.last_release_tag in ("", zero) else rel.last_release_tag
    exclude = nested_unit_paths(unit, units or {})
    unit.changelog = classify_history(git, from_tag, to_ref, unit.path, exclude)

    if not compute_bump or unit.changelog.empty:
        return
    tag = next_release_tag(rel.last_release_tag, unit.tag_prefix, unit.changelog.entries)
    if tag is not None:
        rel.next_release_tag = tag
        rel.needs_release = True


def _finish(unit: Unit, override: str | None) -> None:
    """Apply a VERSION override and make sure a release has a changelog."""
    rel = unit.release
    if override and not rel.pending_release:
        candidate = rel.next_release_tag or rel.last_release_tag
        current = candidate[len(unit.tag_prefix) :] if candidate else ""
        if not is_valid_tag(current) or compare_versions(override, current) > 0:
            rel.next_release_tag = f"{unit.tag_prefix}{override}"
            rel.needs_release = True

    if rel.needs_release and (unit.changelog is None or unit.changelog.empty):
        unit.changelog = Changelog()
        unit.changelog.add("initial release", Category.FEATURE)


def set_dependency(unit: Unit, name: str, version: str) -> bool:
    """Raise ``unit``'s requirement on ``name`` to at least ``version``.

    A raised requirement means the unit needs a release; if no version bump
    was computed for it yet, it gets a patch bump.

    Returns:
        True if the requirement was raised.
    """
    if unit.is_internal:
        return False
    if not unit.manifest.set_dependency(name, version):
        return False
    rel = unit.release
    unit.update_deps = True
    rel.needs_release = True
    if not rel.next_release_tag or rel.next_release_tag == rel.last_release_tag:
        rel.next_release_tag = bump_tag(rel.last_release_tag, unit.tag_prefix, Bump.PATCH)
    return True


def common_dependencies(units: Mapping[str, Unit]) -> list[CommonDependency]:
    """Find dependencies with a version requirement shared by two or more units.

    Returns:
        One CommonDependency per shared dependency, sorted by name, with the
        lowest and highest minimum version required across units.
    """
    seen: dict[str, list[tuple[str, Version]]] = {}
    for unit in units.values():
        for dep in unit.manifest.dependencies():
            if dep.version is None:
                continue
            seen.setdefault(dep.name, []).append((unit.name, Version(dep.version)))

    common: list[CommonDependency] = []
    for name in sorted(seen):
        users = seen[name]
        if len(users) < 2:
            continue
        versions = [v for _, v in users]
        common.append(
            CommonDependency(
                name=name,
                min_version=str(min(versions)),
                max_version=str(max(versions)),
                used_by=[u for u, _ in users],
            )
        )
    return common
