"""Version-control capability.

Every git operation the release pipeline performs goes through a ``Git``
instance bound to the repository root, so tests can substitute a fake with
the same surface.
"""

from __future__ import annotations

from pathlib import Path

from .shell import CommandError, git

# Pretty format understood by changelog.parse_git_log.
LOG_FORMAT = (
    ":COMMIT_START:%nSHORT:%h%nLONG:%H%nAUTHOR:%an%nMESSAGE:%B:COMMIT_END:"
)


class GitError(RuntimeError):
    """A git command failed."""


class Git:
    """Run git commands against a single repository."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def _git(self, *args: str) -> str:
        try:
            return git(*args, cwd=self.root)
        except CommandError as exc:
            raise GitError(str(exc)) from exc

    def is_dirty(self, path: Path | str = ".") -> bool:
        """Report whether ``path`` has uncommitted changes.

        Errors are treated as clean, matching ``git status`` on a path
        outside the work tree.
        """
        try:
            status = git("status", "--porcelain", str(path), cwd=self.root)
        except CommandError:
            return False
        return bool(status)

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD")

    def current_remote(self) -> tuple[str, str]:
        """Return (name, url) of the remote tracked by the current branch."""
        upstream = self._git("rev-parse", "--abbrev-ref", "@{u}")
        name = upstream.split("/", 1)[0].strip()
        url = self._git("config", "--get", f"remote.{name}.url")
        return name, url

    def list_tags(self, pattern: str) -> list[str]:
        out = self._git("tag", "--list", pattern)
        return [line for line in out.splitlines() if line]

    def remote_tag_exists(self, remote: str, tag: str) -> bool:
        try:
            out = git("ls-remote", "--tags", remote, tag, cwd=self.root)
        except CommandError:
            return False
        return f"refs/tags/{tag}" in out

    def tag_exists(self, tag: str) -> bool:
        try:
            out = git("tag", "--list", tag, cwd=self.root)
        except CommandError:
            return False
        return tag in out.splitlines()

    def create_tag(self, tag: str, message: str, *, sign: bool = False) -> None:
        self._git("tag", "-s" if sign else "-a", tag, "-m", message)

    def commit(self, paths: list[str], message: str) -> None:
        """Stage ``paths`` and commit them; a clean tree is a no-op."""
        if not self.is_dirty("."):
            return
        self._git("add", *paths)
        self._git("commit", "-s", "-m", message)

    def push(self) -> None:
        self._git("push")

    def push_tags(self) -> None:
        self._git("push", "--tags")

    def log(
        self,
        rev_range: str | None,
        path: str = ".",
        exclude: list[str] | None = None,
    ) -> str:
        """Return raw history for ``rev_range`` scoped to ``path``.

        Args:
            rev_range: e.g. "pkg/v1.0.0..HEAD"; None logs the whole history.
            path: Pathspec the history is restricted to.
            exclude: Directories (relative to the root) to leave out.
        """
        args = ["log"]
        if rev_range:
            args.append(rev_range)
        args += [f"--pretty=format:{LOG_FORMAT}", "--", path]
        args += [f":!{d.rstrip('/')}/*" for d in exclude or []]
        return self._git(*args)
