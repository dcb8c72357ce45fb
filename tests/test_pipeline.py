"""Tests for monotag.pipeline."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from conftest import FakeGit, log_text, write_pyproject

from monotag.config import ConfigError
from monotag.models import Unit
from monotag.pipeline import confirm_releasables, run_checks, run_release
from monotag.taskrunner import RunReport, Status, TaskGraphError


def _release(root: Path, git: FakeGit, **kwargs) -> RunReport:
    kwargs.setdefault("confirm", lambda units: True)
    return run_release(root, git=git, echo=None, **kwargs)


def _fail(root: Path, git: FakeGit, **kwargs) -> RunReport:
    with pytest.raises(TaskGraphError) as excinfo:
        _release(root, git, **kwargs)
    return excinfo.value.report


def _status(report: RunReport, name: str) -> Status:
    record = report.get(name)
    assert record is not None, f"no task named {name!r}"
    return record.result.status


class TestFullRelease:
    @patch("monotag.pipeline.step")
    def test_tags_in_dependency_order(
        self, mock_step: MagicMock, workspace: Path, released_git: FakeGit
    ) -> None:
        report = _release(workspace, released_git)

        assert released_git.created == ["v1.1.0", "packages/core/v1.0.1", "packages/api/v0.4.0"]
        assert released_git.tag_pushes == 3
        assert _status(report, "finalizing") is Status.SUCCESS
        assert _status(report, "sort units") is Status.SUCCESS
        assert report.get("sort units").result.desc == "acme -> acme-core -> acme-api"

    @patch("monotag.pipeline.step")
    def test_task_sequence(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        report = _release(workspace, released_git)

        top_level = [r.name for r in report.records if r.depth == 0]
        assert top_level == [
            "starting releaser",
            "checking git branch",
            "checking git remote",
            "checking dist dir",
            "linting",
            "tests",
            "commit",
            "load release info",
            "units",
            "sort units",
            "check common deps",
            "update common deps",
            "common deps summary",
            "check units to release",
            "confirm releasable units",
            "tag units",
            "changelog",
            "finalizing",
        ]
        api_chain = [r.name for r in report.records if r.name.startswith("api: ")]
        assert api_chain == [
            "api: check need release",
            "api: verify deps",
            "api: update manifest",
            "api: restore manifest",
            "api: commit",
            "api: tag",
            "api: passed",
        ]

    @patch("monotag.pipeline.step")
    def test_converges_common_dependencies(
        self, mock_step: MagicMock, workspace: Path, released_git: FakeGit
    ) -> None:
        report = _release(workspace, released_git)

        core = (workspace / "packages" / "core" / "pyproject.toml").read_text()
        assert '"requests>=2.31"' in core
        assert _status(report, "common deps summary") is Status.SUCCESS

    @patch("monotag.pipeline.step")
    def test_local_sources_removed_after_release(
        self, mock_step: MagicMock, workspace: Path, released_git: FakeGit
    ) -> None:
        before = (workspace / "packages" / "api" / "pyproject.toml").read_text()

        report = _release(workspace, released_git)

        assert report.get("api: verify deps").result.desc == "local: acme-core"
        assert _status(report, "api: restore manifest") is Status.SUCCESS
        assert (workspace / "packages" / "api" / "pyproject.toml").read_text() == before

    @patch("monotag.pipeline.run")
    @patch("monotag.pipeline.step")
    def test_validate_command_runs_with_local_sources(
        self,
        mock_step: MagicMock,
        mock_run: MagicMock,
        workspace: Path,
        released_git: FakeGit,
    ) -> None:
        pyproject = workspace / "pyproject.toml"
        pyproject.write_text(
            pyproject.read_text() + '\n[tool.monotag.releaser]\nvalidate-command = ["uv", "lock"]\n'
        )
        api_dir = (workspace / "packages" / "api").resolve()
        seen: list[str] = []
        mock_run.side_effect = lambda *args, cwd: seen.append(
            (Path(cwd) / "pyproject.toml").read_text()
        )

        _release(workspace, released_git)

        api_calls = [c for c in mock_run.call_args_list if c.kwargs["cwd"] == api_dir]
        assert len(api_calls) == 2
        assert any("[tool.uv.sources]" in text for text in seen)

    @patch("monotag.pipeline.step")
    def test_changelog_written(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        _release(workspace, released_git)

        text = (workspace / "dist" / "CHANGELOG.md").read_text()
        assert text.startswith("## Changelog\n`acme@v1.1.0`")
        assert "### packages/core/v1.0.1" in text
        assert "`acme-api@v0.4.0`" in text
        assert text.index("packages/core/v1.0.1") < text.index("packages/api/v0.4.0")

    @patch("monotag.pipeline.step")
    def test_unchanged_units_skip(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        released_git.logs = {"packages/core": log_text("fix: handle empty payloads")}

        report = _release(workspace, released_git)

        assert _status(report, "acme: check need release") is Status.SKIP
        assert report.get("acme: tag").result.message == "no tag needed"
        assert _status(report, "acme: passed") is Status.INFO
        assert "v1.1.0" not in released_git.created

    @patch("monotag.pipeline.step")
    def test_internal_unit_never_tagged(
        self, mock_step: MagicMock, workspace: Path, released_git: FakeGit
    ) -> None:
        write_pyproject(
            workspace / "packages" / "tools",
            '[project]\nname = "acme-internal-tools"\n',
        )
        write_pyproject(
            workspace / "packages" / "api",
            '[project]\nname = "acme-api"\n'
            'dependencies = ["acme-core>=0.1.0", "acme-internal-tools", "requests>=2.31"]\n',
        )
        released_git.logs["packages/tools"] = log_text("feat!: rewrite everything")

        report = _release(workspace, released_git)

        assert report.get("tools: check need release").result.message == "internal unit, not tagged"
        assert _status(report, "tools: tag") is Status.SKIP
        assert _status(report, "tools: passed") is Status.INFO
        assert report.get("tools: update manifest") is None
        assert report.get("api: verify deps").result.desc == "local: acme-core"
        assert not any("tools" in tag for tag in released_git.created)
        assert released_git.created == ["v1.1.0", "packages/core/v1.0.1", "packages/api/v0.4.0"]

    @patch("monotag.pipeline.step")
    def test_first_release(self, mock_step: MagicMock, workspace: Path) -> None:
        git = FakeGit()

        _release(workspace, git)

        assert git.created == ["v0.1.0", "packages/core/v0.1.0", "packages/api/v0.1.0"]

    @patch("monotag.pipeline.step")
    def test_nothing_to_release(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        write_pyproject(
            workspace / "packages" / "core",
            '[project]\nname = "acme-core"\ndependencies = ["requests>=2.31"]\n',
        )
        released_git.logs = {}
        confirm = MagicMock(return_value=True)

        report = _release(workspace, released_git, confirm=confirm)

        confirm.assert_not_called()
        assert _status(report, "confirm releasable units") is Status.SKIP
        assert released_git.created == []


class TestConfirmation:
    @patch("monotag.pipeline.step")
    def test_rejection_changes_nothing(
        self, mock_step: MagicMock, workspace: Path, released_git: FakeGit
    ) -> None:
        core_before = (workspace / "packages" / "core" / "pyproject.toml").read_text()

        report = _fail(workspace, released_git, confirm=lambda units: False)

        assert _status(report, "confirm releasable units") is Status.FAILURE
        assert _status(report, "tag units") is Status.SKIP
        assert _status(report, "changelog") is Status.SKIP
        assert _status(report, "finalizing") is Status.FAILURE
        assert released_git.created == []
        assert released_git.commits == []
        assert released_git.pushes == 0
        assert released_git.tag_pushes == 0
        assert (workspace / "packages" / "core" / "pyproject.toml").read_text() == core_before
        assert not (workspace / "dist" / "CHANGELOG.md").exists()

    @patch("monotag.pipeline.step")
    def test_confirm_receives_releasables_in_order(
        self, mock_step: MagicMock, workspace: Path, released_git: FakeGit
    ) -> None:
        confirm = MagicMock(return_value=True)

        _release(workspace, released_git, confirm=confirm)

        units = confirm.call_args.args[0]
        assert [u.name for u in units] == ["acme", "acme-core", "acme-api"]

    @patch("monotag.pipeline.click.confirm", return_value=False)
    def test_prompt_lists_units(self, mock_confirm: MagicMock, capsys: pytest.CaptureFixture[str]) -> None:
        unit = Unit(name="acme-core", path="packages/core", dir=Path("core"), tag_prefix="packages/core/")
        unit.release.last_release_tag = "packages/core/v1.0.0"
        unit.release.next_release_tag = "packages/core/v1.0.1"
        unit.release.needs_release = True

        assert not confirm_releasables([unit])
        assert "acme-core: packages/core/v1.0.0 -> packages/core/v1.0.1" in capsys.readouterr().out


class TestPreconditions:
    @patch("monotag.pipeline.step")
    def test_dirty_tree_fails(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        released_git.dirty = {"."}

        report = _fail(workspace, released_git)

        assert _status(report, "starting releaser") is Status.FAILURE
        assert _status(report, "load release info") is Status.SKIP
        assert released_git.created == []

    @patch("monotag.pipeline.step")
    def test_dirty_tree_allowed(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        released_git.dirty = {"."}

        report = _release(workspace, released_git, allow_dirty=True)

        assert _status(report, "starting releaser") is Status.NOTICE
        assert _status(report, "commit") is Status.SUCCESS
        assert released_git.commits[0] == (["-A"], f"chore({workspace.name}): prepare release")

    @patch("monotag.pipeline.step")
    def test_wrong_branch(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        released_git.branch = "feature/x"

        report = _fail(workspace, released_git)

        assert report.get("checking git branch").result.message == "expected branch main, got feature/x"

    @patch("monotag.pipeline.step")
    def test_remote_url_mismatch(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        pyproject = workspace / "pyproject.toml"
        pyproject.write_text(
            pyproject.read_text() + '\n[tool.monotag.git]\nremote-url = "git@example.com:acme/other.git"\n'
        )

        report = _fail(workspace, released_git)

        assert _status(report, "checking git remote") is Status.FAILURE

    @patch("monotag.pipeline.step")
    def test_dist_is_a_file(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        (workspace / "dist").write_text("not a directory")

        report = _fail(workspace, released_git)

        assert report.get("checking dist dir").result.message == "dist is not a directory"

    def test_releasing_disabled(self, workspace: Path, released_git: FakeGit) -> None:
        pyproject = workspace / "pyproject.toml"
        pyproject.write_text(pyproject.read_text() + "\n[tool.monotag.releaser]\nenabled = false\n")

        with pytest.raises(ConfigError, match="releasing is disabled"):
            _release(workspace, released_git)


class TestFailures:
    @patch("monotag.pipeline.step")
    def test_cycle_stops_release(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        write_pyproject(
            workspace / "packages" / "core",
            '[project]\nname = "acme-core"\ndependencies = ["acme-api>=0.1"]\n',
        )

        report = _fail(workspace, released_git)

        sort = report.get("sort units").result
        assert sort.status is Status.FAILURE
        assert "acme-api, acme-core" in sort.message
        assert _status(report, "tag units") is Status.SKIP
        assert released_git.created == []

    @patch("monotag.pipeline.step")
    def test_tag_failure_blocks_dependents_only(
        self, mock_step: MagicMock, workspace: Path, released_git: FakeGit
    ) -> None:
        released_git.fail_tags = {"packages/core/v1.0.1"}

        report = _fail(workspace, released_git)

        assert _status(report, "core: tag") is Status.FAILURE
        assert _status(report, "core: passed") is Status.FAILURE
        assert report.get("api: check need release").result.message == "dependency acme-core failed"
        assert _status(report, "api: tag") is Status.SKIP
        assert _status(report, "api: passed") is Status.SKIP
        assert released_git.created == ["v1.1.0"]
        assert _status(report, "changelog") is Status.SKIP
        assert _status(report, "finalizing") is Status.FAILURE

    @patch("monotag.pipeline.step")
    def test_load_failure(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        def broken(*args, **kwargs):
            raise RuntimeError("log unavailable")

        released_git.log = broken

        report = _fail(workspace, released_git)

        assert _status(report, "units") is Status.FAILURE
        assert _status(report, "sort units") is Status.SKIP

    @patch("monotag.pipeline.step")
    def test_malformed_tag_fails_run(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        released_git.tags.append("packages/core/v1.2")

        report = _fail(workspace, released_git)

        assert _status(report, "core") is Status.FAILURE
        assert "invalid version: packages/core/v1.2" in report.get("core").result.message
        assert _status(report, "units") is Status.FAILURE
        assert released_git.created == []

    @patch("monotag.pipeline.step")
    def test_missing_dependency_tag(self, mock_step: MagicMock, workspace: Path, released_git: FakeGit) -> None:
        original = released_git.create_tag

        def create_tag(tag: str, message: str, *, sign: bool = False) -> None:
            original(tag, message, sign=sign)
            if tag == "packages/core/v1.0.1":
                released_git.tags.remove(tag)

        released_git.create_tag = create_tag

        report = _fail(workspace, released_git)

        verify = report.get("api: verify deps").result
        assert verify.status is Status.FAILURE
        assert verify.message == "tag packages/core/v1.0.1 does not exist"
        assert "packages/api/v0.4.0" not in released_git.created


class TestPendingRelease:
    @patch("monotag.pipeline.step")
    def test_pending_tag_pushed_not_recreated(self, mock_step: MagicMock, workspace: Path) -> None:
        tags = ["v1.0.0", "packages/core/v1.0.0", "packages/api/v0.3.0"]
        git = FakeGit(
            tags=[*tags, "packages/core/v1.1.0"],
            remote_tags=tags,
            logs={"packages/core": log_text("feat: streaming")},
        )

        report = _release(workspace, git)

        assert "packages/core/v1.1.0" not in git.created
        assert report.get("core: tag").result.message == "tag already exists"
        assert "packages/core/v1.1.0" in git.remote_tags
        assert _status(report, "core: passed") is Status.SUCCESS


class TestRunChecks:
    @patch("monotag.checks.run")
    @patch("monotag.pipeline.step")
    def test_lint(self, mock_step: MagicMock, mock_run: MagicMock, workspace: Path) -> None:
        pyproject = workspace / "pyproject.toml"
        pyproject.write_text(pyproject.read_text() + "\n[tool.monotag.linter]\nenabled = true\n")
        mock_run.return_value = ""

        report = run_checks("lint", workspace, echo=None)

        assert [r.name for r in report.records] == ["linting", "acme", "packages/api", "packages/core"]
        assert mock_run.call_count == 3

    @patch("monotag.pipeline.step")
    def test_unknown_kind(self, mock_step: MagicMock, workspace: Path) -> None:
        with pytest.raises(ValueError, match="unknown check kind"):
            run_checks("format", workspace, echo=None)
