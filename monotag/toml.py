"""TOML reading and writing utilities.

Uses tomlkit to preserve formatting and comments when modifying pyproject.toml
files. This is important for maintaining readable, diff-friendly files.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomlkit
from packaging.utils import canonicalize_name


def load_pyproject(path: Path) -> tomlkit.TOMLDocument:
    """Load and parse a pyproject.toml file.

    Returns a TOMLDocument that preserves formatting when modified and saved.
    """
    return tomlkit.parse(path.read_text())


def save_pyproject(path: Path, doc: tomlkit.TOMLDocument) -> None:
    """Save a TOMLDocument back to disk, preserving original formatting."""
    path.write_text(tomlkit.dumps(doc))


def has_project(doc: tomlkit.TOMLDocument) -> bool:
    return "project" in doc


def get_project_name(doc: tomlkit.TOMLDocument, fallback: str) -> str:
    """Extract the canonical package name from [project].name.

    Names are normalized per PEP 503 (lowercase, hyphens instead of
    underscores) for consistent comparison.
    """
    return canonicalize_name(doc.get("project", {}).get("name", fallback))


def get_dependency_lists(doc: tomlkit.TOMLDocument) -> list[list[Any]]:
    """Return every dependency array of a pyproject.toml, as live tomlkit arrays.

    Covers [project].dependencies, [project].optional-dependencies.* and
    [dependency-groups].*; editing the returned lists edits the document.
    """
    lists: list[list[Any]] = []
    project = doc.get("project", {})
    deps = project.get("dependencies")
    if isinstance(deps, list):
        lists.append(deps)
    for group in project.get("optional-dependencies", {}).values():
        if isinstance(group, list):
            lists.append(group)
    for group in doc.get("dependency-groups", {}).values():
        if isinstance(group, list):
            lists.append(group)
    return lists


def get_all_dependency_strings(doc: tomlkit.TOMLDocument) -> list[str]:
    """Collect all PEP 508 dependency strings from a pyproject.toml.

    Include-group tables inside [dependency-groups] are not strings and
    are skipped.
    """
    return [
        str(dep)
        for group in get_dependency_lists(doc)
        for dep in group
        if isinstance(dep, str)
    ]


def get_workspace_member_globs(doc: tomlkit.TOMLDocument) -> list[str]:
    """Extract workspace member glob patterns from [tool.uv.workspace].

    Returns an empty list for a single-package repository.
    """
    members = doc.get("tool", {}).get("uv", {}).get("workspace", {}).get("members")
    return [str(m) for m in members or []]


def get_tool_table(doc: tomlkit.TOMLDocument, name: str) -> dict[str, Any]:
    """Return [tool.<name>] as plain Python data (empty if absent)."""
    table = doc.get("tool", {}).get(name, {})
    return table.unwrap() if hasattr(table, "unwrap") else dict(table)
