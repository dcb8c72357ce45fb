"""Shared test fixtures."""

from __future__ import annotations

import fnmatch
from pathlib import Path

import pytest

from monotag.git import GitError


def log_text(*messages: str) -> str:
    """Build ``git log`` output in the format monotag requests."""
    records = []
    for i, message in enumerate(messages):
        records.append(
            f":COMMIT_START:\nSHORT:c0ffee{i}\nLONG:c0ffee{i}{'0' * 33}\n"
            f"AUTHOR:Dev\nMESSAGE:{message}\n:COMMIT_END:"
        )
    return "\n".join(records)


class FakeGit:
    """In-memory stand-in for monotag.git.Git.

    Attributes:
        tags: Local tags.
        remote_tags: Tags present on the remote.
        logs: Unit path → raw log output returned for that path.
        dirty: Paths reported as having uncommitted changes.
        fail_tags: Tags whose creation raises GitError.
    """

    def __init__(
        self,
        tags: list[str] | None = None,
        remote_tags: list[str] | None = None,
        logs: dict[str, str] | None = None,
        dirty: set[str] | None = None,
        branch: str = "main",
        remote: tuple[str, str] = ("origin", "git@example.com:acme/mono.git"),
    ) -> None:
        self.tags = list(tags or [])
        self.remote_tags = set(remote_tags or [])
        self.logs = logs or {}
        self.dirty = set(dirty or ())
        self.branch = branch
        self.remote = remote
        self.fail_tags: set[str] = set()
        self.created: list[str] = []
        self.commits: list[tuple[list[str], str]] = []
        self.log_calls: list[tuple[str | None, str, list[str] | None]] = []
        self.pushes = 0
        self.tag_pushes = 0

    def is_dirty(self, path: str = ".") -> bool:
        return str(path) in self.dirty

    def current_branch(self) -> str:
        return self.branch

    def current_remote(self) -> tuple[str, str]:
        return self.remote

    def list_tags(self, pattern: str) -> list[str]:
        return [t for t in self.tags if fnmatch.fnmatchcase(t, pattern)]

    def remote_tag_exists(self, remote: str, tag: str) -> bool:
        return tag in self.remote_tags

    def tag_exists(self, tag: str) -> bool:
        return tag in self.tags

    def create_tag(self, tag: str, message: str, *, sign: bool = False) -> None:
        if tag in self.fail_tags:
            raise GitError(f"`git tag -a {tag}` exited with 128: refusing")
        self.tags.append(tag)
        self.created.append(tag)

    def commit(self, paths: list[str], message: str) -> None:
        self.commits.append((list(paths), message))
        self.dirty.clear()

    def push(self) -> None:
        self.pushes += 1

    def push_tags(self) -> None:
        self.tag_pushes += 1
        self.remote_tags.update(self.tags)

    def log(
        self, rev_range: str | None, path: str = ".", exclude: list[str] | None = None
    ) -> str:
        self.log_calls.append((rev_range, path, exclude))
        return self.logs.get(path, "")


def write_pyproject(directory: Path, content: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "pyproject.toml"
    path.write_text(content)
    return path


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A uv workspace with a root unit and two packages.

    acme-api depends on acme-core; both require requests at different
    minimum versions.
    """
    write_pyproject(
        tmp_path,
        """\
[project]
name = "acme"
version = "1.0.0"
dependencies = []

[tool.uv.workspace]
members = ["packages/*"]
""",
    )
    write_pyproject(
        tmp_path / "packages" / "core",
        """\
[project]
name = "acme-core"
version = "1.0.0"
dependencies = ["requests>=2.28"]
""",
    )
    write_pyproject(
        tmp_path / "packages" / "api",
        """\
[project]
name = "acme-api"
version = "0.3.0"
dependencies = [
    "acme-core>=0.1.0",
    "requests>=2.31",
]
""",
    )
    return tmp_path


@pytest.fixture
def released_git() -> FakeGit:
    """Every unit of ``workspace`` released once, with new commits since."""
    tags = ["v1.0.0", "packages/core/v1.0.0", "packages/api/v0.3.0"]
    return FakeGit(
        tags=tags,
        remote_tags=tags,
        logs={
            ".": log_text("feat: add workspace tooling"),
            "packages/core": log_text("fix: handle empty payloads"),
            "packages/api": log_text("feat(api): add /health endpoint"),
        },
    )


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()
