"""Tests for monotag.git."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest

from monotag.git import LOG_FORMAT, Git, GitError
from monotag.shell import CommandError

ROOT = Path("/repo")


@pytest.fixture
def repo() -> Git:
    return Git(ROOT)


class TestQueries:
    @patch("monotag.git.git")
    def test_is_dirty(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.return_value = " M packages/api/pyproject.toml"
        assert repo.is_dirty("packages/api")
        mock_git.assert_called_once_with("status", "--porcelain", "packages/api", cwd=ROOT)

    @patch("monotag.git.git")
    def test_is_dirty_error_is_clean(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.side_effect = CommandError(["git", "status"], 128, "not a git repository")
        assert not repo.is_dirty()

    @patch("monotag.git.git")
    def test_current_remote(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.side_effect = ["origin/main", "git@example.com:acme/mono.git"]

        assert repo.current_remote() == ("origin", "git@example.com:acme/mono.git")
        assert mock_git.call_args_list == [
            call("rev-parse", "--abbrev-ref", "@{u}", cwd=ROOT),
            call("config", "--get", "remote.origin.url", cwd=ROOT),
        ]

    @patch("monotag.git.git")
    def test_current_branch_error(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.side_effect = CommandError(["git", "rev-parse"], 128, "fatal: bad HEAD")
        with pytest.raises(GitError, match="fatal: bad HEAD"):
            repo.current_branch()

    @patch("monotag.git.git")
    def test_list_tags(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.return_value = "packages/api/v0.1.0\npackages/api/v0.2.0\n"
        assert repo.list_tags("packages/api/*") == ["packages/api/v0.1.0", "packages/api/v0.2.0"]

    @patch("monotag.git.git")
    def test_remote_tag_exists(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.return_value = "1f2e3d4c\trefs/tags/packages/api/v0.2.0"
        assert repo.remote_tag_exists("origin", "packages/api/v0.2.0")
        assert not repo.remote_tag_exists("origin", "packages/api/v0.3.0")

    @patch("monotag.git.git")
    def test_remote_tag_unreachable(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.side_effect = CommandError(["git", "ls-remote"], 128, "Could not resolve host")
        assert not repo.remote_tag_exists("origin", "v1.0.0")

    @patch("monotag.git.git")
    def test_tag_exists(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.return_value = "v1.0.0"
        assert repo.tag_exists("v1.0.0")
        mock_git.return_value = ""
        assert not repo.tag_exists("v1.0.0")


class TestMutations:
    @patch("monotag.git.git")
    def test_create_tag(self, mock_git: MagicMock, repo: Git) -> None:
        repo.create_tag("packages/api/v0.4.0", "v0.4.0")
        repo.create_tag("v1.0.0", "v1.0.0", sign=True)
        assert mock_git.call_args_list == [
            call("tag", "-a", "packages/api/v0.4.0", "-m", "v0.4.0", cwd=ROOT),
            call("tag", "-s", "v1.0.0", "-m", "v1.0.0", cwd=ROOT),
        ]

    @patch("monotag.git.git")
    def test_commit(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.return_value = " M packages/api/pyproject.toml"

        repo.commit(["packages/api"], "chore(api): prepare release v0.4.0")

        assert mock_git.call_args_list[1:] == [
            call("add", "packages/api", cwd=ROOT),
            call("commit", "-s", "-m", "chore(api): prepare release v0.4.0", cwd=ROOT),
        ]

    @patch("monotag.git.git")
    def test_commit_clean_tree(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.return_value = ""
        repo.commit(["-A"], "chore: nothing")
        mock_git.assert_called_once_with("status", "--porcelain", ".", cwd=ROOT)

    @patch("monotag.git.git")
    def test_push_failure(self, mock_git: MagicMock, repo: Git) -> None:
        mock_git.side_effect = CommandError(["git", "push", "--tags"], 1, "rejected")
        with pytest.raises(GitError, match="rejected"):
            repo.push_tags()


class TestLog:
    @patch("monotag.git.git")
    def test_scoped_with_excludes(self, mock_git: MagicMock, repo: Git) -> None:
        repo.log("v1.0.0..HEAD", ".", ["packages/api", "packages/core/"])

        mock_git.assert_called_once_with(
            "log",
            "v1.0.0..HEAD",
            f"--pretty=format:{LOG_FORMAT}",
            "--",
            ".",
            ":!packages/api/*",
            ":!packages/core/*",
            cwd=ROOT,
        )

    @patch("monotag.git.git")
    def test_whole_history(self, mock_git: MagicMock, repo: Git) -> None:
        repo.log(None, "packages/api")
        assert mock_git.call_args.args[:2] == ("log", f"--pretty=format:{LOG_FORMAT}")
