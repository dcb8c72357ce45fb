"""Version parsing and bumping utilities.

Release tags have the form ``<prefix>v<major>.<minor>.<patch>[-<pre>]`` where
the prefix namespaces tags of units living below the repository root
(``packages/api/v1.2.0``). The root unit has an empty prefix.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from pathlib import Path

import semver

from .changelog import Category, ChangeEntry

VERSION_FILE = "VERSION"
ZERO_VERSION = "v0.0.0"


class InvalidVersionError(ValueError):
    """A tag does not decompose into major.minor.patch."""


class Bump(str, Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"
    NONE = "none"


def strip_tag(tag: str, prefix: str = "") -> str:
    """Remove the unit prefix and leading "v" from a tag."""
    if prefix and tag.startswith(prefix):
        tag = tag[len(prefix) :]
    return tag[1:] if tag.startswith("v") else tag


def parse_tag(tag: str, prefix: str = "") -> semver.Version:
    """Parse a release tag into a semver.Version.

    Unlike a plain semver parse, exactly three numeric components are
    required: "v1.2" and "v1.2.3.4" are rejected rather than padded.

    Raises:
        InvalidVersionError: If the tag is not a valid release version.
    """
    clean = strip_tag(tag, prefix)
    core = clean.split("-", 1)[0].split("+", 1)[0]
    parts = core.split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise InvalidVersionError(f"invalid version: {tag}")
    try:
        return semver.Version.parse(clean)
    except ValueError as exc:
        raise InvalidVersionError(f"invalid version: {tag}") from exc


def is_valid_tag(tag: str, prefix: str = "") -> bool:
    try:
        parse_tag(tag, prefix)
    except InvalidVersionError:
        return False
    return True


def format_tag(prefix: str, version: semver.Version) -> str:
    return f"{prefix}v{version}"


def decide_bump(entries: Iterable[ChangeEntry]) -> Bump:
    """Classify a change set into a single version bump.

    The most severe category present wins, however many entries of lower
    severity accompany it.
    """
    categories = {e.category for e in entries}
    if Category.BREAKING in categories:
        return Bump.MAJOR
    if Category.FEATURE in categories:
        return Bump.MINOR
    if Category.FIX in categories:
        return Bump.PATCH
    return Bump.NONE


def bump_tag(tag: str, prefix: str, bump: Bump) -> str:
    """Apply ``bump`` to ``tag`` and return the new prefixed tag.

    Examples:
        bump_tag("v1.2.0", "", Bump.PATCH) → "v1.2.1"
        bump_tag("api/v2.0.0", "api/", Bump.MAJOR) → "api/v3.0.0"
    """
    version = parse_tag(tag, prefix)
    # Pre-release and build parts are dropped: the next tag is a plain release.
    base = semver.Version(version.major, version.minor, version.patch)
    if bump is Bump.MAJOR:
        return format_tag(prefix, base.bump_major())
    if bump is Bump.MINOR:
        return format_tag(prefix, base.bump_minor())
    if bump is Bump.PATCH:
        return format_tag(prefix, base.bump_patch())
    return format_tag(prefix, base)


def next_release_tag(
    last_tag: str, prefix: str, entries: Iterable[ChangeEntry]
) -> str | None:
    """Compute the next tag for a change set, or None if nothing warrants one."""
    bump = decide_bump(entries)
    if bump is Bump.NONE:
        return None
    return bump_tag(last_tag, prefix, bump)


def sort_tags(tags: Iterable[str], prefix: str = "") -> list[str]:
    """Sort a unit's tags oldest to newest by semantic version.

    Tags of nested units (another "/" after the prefix) and tags that are
    not release tags at all (not "v<digit>...") are dropped.

    Raises:
        InvalidVersionError: If a release tag is malformed ("v1.2").
    """
    own: list[tuple[semver.Version, str]] = []
    for tag in tags:
        rest = tag[len(prefix) :] if tag.startswith(prefix) else None
        if rest is None or "/" in rest:
            continue
        if len(rest) < 2 or rest[0] != "v" or not rest[1].isdigit():
            continue
        own.append((parse_tag(tag, prefix), tag))
    own.sort(key=lambda item: item[0])
    return [tag for _, tag in own]


def compare_versions(a: str, b: str) -> int:
    """Compare two "vX.Y.Z" strings; returns -1, 0 or 1."""
    return parse_tag(a).compare(parse_tag(b))


def read_version_override(unit_dir: Path) -> str | None:
    """Read an explicit next version from ``<unit_dir>/VERSION``.

    Returns the normalized "vX.Y.Z" string, or None if the file is missing
    or does not hold a valid version.
    """
    path = unit_dir / VERSION_FILE
    if not path.is_file():
        return None
    raw = path.read_text().strip()
    try:
        return f"v{parse_tag(raw)}"
    except InvalidVersionError:
        return None
