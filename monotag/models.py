"""Data models for monotag.

These Pydantic models represent the units of a monorepo and the release
state the pipeline computes for each of them during a run.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from packaging.version import Version
from pydantic import BaseModel, ConfigDict, Field

from .changelog import Changelog
from .versions import ZERO_VERSION

# Tag value used for units that are never tagged on their own.
NOT_APPLICABLE = "."


class Dependency(BaseModel):
    """A declared dependency and the minimum version it requires, if any."""

    name: str
    version: str | None = None


class ReleaseState(BaseModel):
    """What the pipeline has learned about a unit's next release.

    Attributes:
        first_release: No tag of this unit exists on the remote yet.
        needs_release: Something (history, a dependency bump, a pending
            tag, a VERSION override) requires a new tag.
        pending_release: The newest local tag is not confirmed on the
            remote; it will be pushed as-is, never recomputed.
        next_release_tag: Full tag (with prefix) of the next release.
        last_release_tag: Full tag of the last confirmed release.
        next_release_tag_remote_exists: The newest tag was found on the
            remote while loading.
    """

    first_release: bool = False
    needs_release: bool = False
    pending_release: bool = False
    next_release_tag: str = ""
    last_release_tag: str = ""
    next_release_tag_remote_exists: bool = False


class Unit(BaseModel):
    """A single independently versioned package in the monorepo.

    Attributes:
        name: Canonical project name, the unit's identity.
        path: Directory relative to the repository root ("." for the root).
        dir: Absolute directory.
        tag_prefix: Namespace for this unit's tags ("" for the root unit,
            "<path>/" otherwise).
        deps: Names of internal units this unit depends on.
        is_internal: Unit lives in an "internal" namespace and is never
            tagged on its own.
        update_deps: A dependency requirement was raised during this run.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    path: str
    dir: Path
    tag_prefix: str = ""
    deps: list[str] = Field(default_factory=list)
    is_internal: bool = False
    update_deps: bool = False
    release: ReleaseState = Field(default_factory=ReleaseState)
    changelog: Changelog | None = None
    manifest: Any = Field(default=None, exclude=True, repr=False)

    @property
    def is_root(self) -> bool:
        return self.tag_prefix == ""

    @property
    def label(self) -> str:
        """Short display name used in task names."""
        return self.name if self.is_root else Path(self.path).name

    @property
    def next_version(self) -> str:
        return _version_part(self.release.next_release_tag, self.tag_prefix)

    @property
    def last_version(self) -> str:
        return _version_part(self.release.last_release_tag, self.tag_prefix)

    def mark_internal(self) -> None:
        self.is_internal = True
        self.release.first_release = False
        self.release.needs_release = False
        self.release.pending_release = False
        self.release.last_release_tag = NOT_APPLICABLE
        self.release.next_release_tag = NOT_APPLICABLE

    def mark_first_release(self, next_version: str) -> None:
        self.release.first_release = True
        self.release.needs_release = True
        self.release.next_release_tag = f"{self.tag_prefix}{next_version}"
        self.release.last_release_tag = f"{self.tag_prefix}{ZERO_VERSION}"

    def mark_pending(self, local_tag: str) -> None:
        self.release.pending_release = True
        self.release.first_release = False
        self.release.needs_release = True
        self.release.next_release_tag = local_tag


class CommonDependency(BaseModel):
    """A dependency declared by two or more units.

    Attributes:
        name: Canonical name of the dependency.
        min_version: Lowest minimum version required across units.
        max_version: Highest minimum version required across units.
        used_by: Names of the units that declare it.
    """

    name: str
    min_version: str
    max_version: str
    used_by: list[str] = Field(default_factory=list)

    @property
    def diverged(self) -> bool:
        return Version(self.min_version) != Version(self.max_version)


def _version_part(tag: str, prefix: str) -> str:
    if prefix and tag.startswith(prefix):
        return tag[len(prefix) :]
    return tag
