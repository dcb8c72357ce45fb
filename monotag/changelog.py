"""Change history classification and changelog rendering.

History is read with ``git log`` in a delimited pretty format (see
``git.LOG_FORMAT``) and every commit is classified by its Conventional
Commits header into breaking / feature / fix / other.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .git import Git
    from .models import Unit

CHANGELOG_FILE = "CHANGELOG.md"

_COMMIT_RE = re.compile(r":COMMIT_START:\n(.*?):COMMIT_END:", re.DOTALL)
_HEADER_RE = re.compile(
    r"^(?P<type>[A-Za-z]+)(?:\((?P<scope>[^)]*)\))?(?P<bang>!)?:\s*(?P<desc>.+)$"
)
_BREAKING_FOOTER_RE = re.compile(r"^BREAKING[ -]CHANGE:", re.MULTILINE)


class Category(str, Enum):
    BREAKING = "breaking"
    FEATURE = "feature"
    FIX = "fix"
    OTHER = "other"


class ChangeEntry(BaseModel):
    """One classified commit."""

    short: str = ""
    long: str = ""
    author: str = ""
    subject: str
    body: str = ""
    category: Category = Category.OTHER

    def line(self) -> str:
        """Render as a changelog list item."""
        return f"* {self.short} {self.subject}" if self.short else f"* {self.subject}"


class Changelog(BaseModel):
    """Classified history of a unit since its last release."""

    entries: list[ChangeEntry] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.entries

    def add(self, subject: str, category: Category, **fields: str) -> ChangeEntry:
        entry = ChangeEntry(subject=subject, category=category, **fields)
        self.entries.append(entry)
        return entry

    def breaking(self) -> list[ChangeEntry]:
        return [e for e in self.entries if e.category is Category.BREAKING]

    def changes(self) -> list[ChangeEntry]:
        return [e for e in self.entries if e.category is not Category.BREAKING]


def classify(subject: str, body: str = "") -> Category:
    """Classify a commit message by its Conventional Commits header.

    Examples:
        "feat(api)!: drop v1 routes" → BREAKING
        "feat: add retries" → FEATURE
        "fix: handle empty tag list" → FIX
        "docs: typo" → OTHER
    """
    m = _HEADER_RE.match(subject.strip())
    if _BREAKING_FOOTER_RE.search(body) or (m and m.group("bang")):
        return Category.BREAKING
    if not m:
        return Category.OTHER
    kind = m.group("type").lower()
    if kind in ("feat", "feature"):
        return Category.FEATURE
    if kind in ("fix", "perf"):
        return Category.FIX
    return Category.OTHER


def parse_git_log(text: str) -> Changelog:
    """Parse ``git log`` output produced with ``git.LOG_FORMAT``."""
    changelog = Changelog()
    for record in _COMMIT_RE.findall(text):
        fields: dict[str, str] = {}
        message: list[str] = []
        lines = record.split("\n")
        for i, line in enumerate(lines):
            key, sep, value = line.partition(":")
            if sep and key in ("SHORT", "LONG", "AUTHOR"):
                fields[key] = value.strip()
            elif sep and key == "MESSAGE":
                message = [value, *lines[i + 1 :]]
                break
        subject = message[0].strip() if message else ""
        body = "\n".join(message[1:]).strip()
        if not subject:
            continue
        changelog.add(
            subject,
            classify(subject, body),
            short=fields.get("SHORT", ""),
            long=fields.get("LONG", ""),
            author=fields.get("AUTHOR", ""),
            body=body,
        )
    return changelog


def classify_history(
    git: Git,
    from_tag: str | None,
    to_ref: str,
    path_scope: str,
    exclude: list[str] | None = None,
) -> Changelog:
    """Classify history between ``from_tag`` (exclusive) and ``to_ref``.

    ``from_tag`` of None means the whole history up to ``to_ref``.
    """
    rev_range = f"{from_tag}..{to_ref}" if from_tag else to_ref
    return parse_git_log(git.log(rev_range, path_scope, exclude))


class _UnitSection(BaseModel):
    name: str
    next_tag: str
    version: str
    breaking: list[str] = Field(default_factory=list)
    changes: list[str] = Field(default_factory=list)


def _section(unit: Unit) -> _UnitSection:
    if unit.changelog is None:
        raise ValueError(f"{unit.name} has no release information loaded")
    return _UnitSection(
        name=unit.name,
        next_tag=unit.release.next_release_tag,
        version=unit.next_version,
        breaking=[e.line() for e in unit.changelog.breaking()],
        changes=[e.line() for e in unit.changelog.changes()],
    )


def render_changelog(root: Unit | None, subunits: list[Unit]) -> str:
    """Render the release changelog document.

    The root unit comes first, then one section per sub-unit headed by its
    next tag. Lines of the root section that also appear in a sub-unit
    section are listed only under the sub-unit. Lines are compared as text,
    so two commits rendering to the same line are treated as one.
    """
    subs = [_section(u) for u in subunits]
    out = ["## Changelog\n"]

    if root is not None:
        sec = _section(root)
        out.append(f"`{sec.name}@{sec.next_tag}`\n\n")
        sub_breaking = {line for s in subs for line in s.breaking}
        sub_changes = {line for s in subs for line in s.changes}
        breaking = [line for line in sec.breaking if line not in sub_breaking]
        changes = [line for line in sec.changes if line not in sub_changes]
        if breaking:
            out.append("### Breaking Changes\n")
            out.extend(f"{line}\n" for line in breaking)
        if changes:
            out.append("### Changes\n")
            out.extend(f"{line}\n" for line in changes)
        out.append("\n")

    for sec in subs:
        out.append(f"\n### {sec.next_tag}\n\n`{sec.name}@{sec.version}`\n")
        if sec.breaking:
            out.append("**Breaking Changes**\n")
            out.extend(f"{line}\n" for line in sec.breaking)
        if sec.changes:
            out.append("**Changes**\n")
            out.extend(f"{line}\n" for line in sec.changes)

    out.append("\n")
    return "".join(out)


def write_changelog(dist: Path, root: Unit | None, subunits: list[Unit]) -> Path:
    path = dist / CHANGELOG_FILE
    path.write_text(render_changelog(root, subunits))
    return path
