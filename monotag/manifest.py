"""Dependency manifest handling.

A unit's manifest is its pyproject.toml. ``Manifest`` wraps the tomlkit
document so requirements can be inspected, raised and temporarily pointed
at local paths without disturbing formatting or comments.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomlkit
from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version
from tomlkit.exceptions import TOMLKitError

from .models import Dependency
from .toml import (
    get_all_dependency_strings,
    get_dependency_lists,
    get_project_name,
    load_pyproject,
    save_pyproject,
)

# Operators whose version acts as the lowest acceptable version.
_LOWER_BOUND_OPS = (">=", "==", "~=", "===")


class ManifestError(RuntimeError):
    """A pyproject.toml could not be read, parsed or updated."""


def dep_canonical_name(dep_str: str) -> str:
    """Extract the canonical package name from a PEP 508 dependency string.

    Examples:
        "requests>=2.0" → "requests"
        "My_Package[extra]~=1.0" → "my-package"
    """
    return canonicalize_name(Requirement(dep_str).name)


def minimum_version(dep_str: str) -> str | None:
    """Return the minimum version a dependency string requires, if any.

    Examples:
        "requests>=2.0,<3" → "2.0"
        "pkg~=1.4.2" → "1.4.2"
        "pkg" → None
    """
    req = Requirement(dep_str)
    bounds: list[Version] = []
    for spec in req.specifier:
        if spec.operator not in _LOWER_BOUND_OPS:
            continue
        try:
            bounds.append(Version(spec.version))
        except InvalidVersion:
            continue
    return str(max(bounds)) if bounds else None


def raise_dep(dep_str: str, version: str) -> str:
    """Require at least ``version`` of a dependency.

    Preserves extras (sorted for consistent output) and environment
    markers, but replaces the version specifier.

    Examples:
        raise_dep("requests>=2.0,<3", "2.31.0") → "requests>=2.31.0"
        raise_dep("pkg[b,a]; python_version<'3.12'", "1.5") →
            'pkg[a,b]>=1.5; python_version < "3.12"'
    """
    req = Requirement(dep_str)
    extras = f"[{','.join(sorted(req.extras))}]" if req.extras else ""
    marker = f"; {req.marker}" if req.marker else ""
    return f"{req.name}{extras}>={version}{marker}"


class Manifest:
    """A unit's pyproject.toml, loaded for editing."""

    def __init__(self, path: Path) -> None:
        self.path = path
        try:
            self._text = path.read_text()
            self.doc = load_pyproject(path)
        except (OSError, TOMLKitError) as exc:
            raise ManifestError(f"failed to load {path}: {exc}") from exc
        self._before_sources: str | None = None

    @property
    def name(self) -> str:
        return get_project_name(self.doc, self.path.parent.name)

    @property
    def dirty(self) -> bool:
        """True when the in-memory document differs from the file on disk."""
        return tomlkit.dumps(self.doc) != self._text

    def dependency_strings(self) -> list[str]:
        return get_all_dependency_strings(self.doc)

    def dependencies(self) -> list[Dependency]:
        """Declared dependencies, one per canonical name, in declaration order.

        When a name appears in several groups the highest minimum wins.
        """
        found: dict[str, Dependency] = {}
        for dep_str in self.dependency_strings():
            try:
                name = dep_canonical_name(dep_str)
                version = minimum_version(dep_str)
            except InvalidRequirement as exc:
                raise ManifestError(f"{self.path}: {exc}") from exc
            current = found.get(name)
            if current is None:
                found[name] = Dependency(name=name, version=version)
            elif version and (
                current.version is None or Version(version) > Version(current.version)
            ):
                current.version = version
        return list(found.values())

    def set_dependency(self, name: str, version: str) -> bool:
        """Raise the requirement on ``name`` to at least ``version``.

        Every declaration of the dependency is rewritten; a dependency that
        is not declared at all is added to [project].dependencies. A
        requirement that is already at or above ``version`` is left alone.

        Returns:
            True if the document changed.
        """
        target = canonicalize_name(name)
        wanted = Version(version)
        changed = False
        declared = False
        for group in get_dependency_lists(self.doc):
            for i, dep_str in enumerate(group):
                if not isinstance(dep_str, str) or dep_canonical_name(dep_str) != target:
                    continue
                declared = True
                current = minimum_version(dep_str)
                if current is not None and Version(current) >= wanted:
                    continue
                group[i] = raise_dep(dep_str, version)
                changed = True
        if not declared:
            if "project" not in self.doc:
                self.doc["project"] = tomlkit.table()
            if "dependencies" not in self.doc["project"]:
                self.doc["project"]["dependencies"] = tomlkit.array()
            self.doc["project"]["dependencies"].append(f"{name}>={version}")
            changed = True
        return changed

    def add_local_source(self, name: str, path: str) -> None:
        """Point ``name`` at a local directory via [tool.uv.sources].

        The state before the first call is remembered so
        ``restore_sources`` can undo every local source at once.
        """
        if self._before_sources is None:
            self._before_sources = tomlkit.dumps(self.doc)
        tool = _child_table(self.doc, "tool")
        uv = _child_table(tool, "uv")
        sources = _child_table(uv, "sources", super_table=False)
        entry = tomlkit.inline_table()
        entry.update({"path": path, "editable": True})
        sources[name] = entry

    def restore_sources(self) -> bool:
        """Drop local sources added by ``add_local_source``.

        Returns:
            True if there was anything to restore.
        """
        if self._before_sources is None:
            return False
        self.doc = tomlkit.parse(self._before_sources)
        self._before_sources = None
        return True

    def save(self) -> None:
        try:
            save_pyproject(self.path, self.doc)
        except OSError as exc:
            raise ManifestError(f"failed to write {self.path}: {exc}") from exc
        self._text = tomlkit.dumps(self.doc)


def _child_table(parent: Any, key: str, *, super_table: bool = True) -> Any:
    if key not in parent:
        parent[key] = tomlkit.table(is_super_table=super_table)
    return parent[key]
