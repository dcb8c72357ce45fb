"""Project configuration.

Settings live in the root pyproject.toml under [tool.monotag] and are
validated into Pydantic models. Keys are kebab-case in TOML.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .toml import get_tool_table, load_pyproject
from .versions import InvalidVersionError, parse_tag

TOOL_NAME = "monotag"


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class ConfigError(RuntimeError):
    """The [tool.monotag] table is invalid."""


class _Section(BaseModel):
    model_config = ConfigDict(
        alias_generator=_kebab, populate_by_name=True, extra="forbid"
    )


class GitConfig(_Section):
    """Expected repository state for a release.

    Attributes:
        branch: Branch releases must be cut from.
        remote_name: Remote the current branch must track.
        remote_url: Expected URL of that remote; None accepts any URL.
        sign_tags: Create signed tags (``git tag -s``) instead of annotated.
    """

    branch: str = "main"
    remote_name: str = "origin"
    remote_url: str | None = None
    sign_tags: bool = False


class LinterConfig(_Section):
    enabled: bool = False
    command: list[str] = Field(default_factory=lambda: ["ruff", "check", "."])


class UnitTestsConfig(_Section):
    enabled: bool = False
    command: list[str] = Field(default_factory=lambda: ["pytest"])


class ReleaserConfig(_Section):
    """Release behaviour.

    Attributes:
        enabled: Releasing can be switched off for a repository.
        dist: Output directory (relative to the root) for CHANGELOG.md.
        initial_version: Version of a unit's first release.
        validate_command: Command run in a unit's directory while its
            internal dependencies point at local paths; empty to skip.
    """

    enabled: bool = True
    dist: str = "dist"
    initial_version: str = "v0.1.0"
    validate_command: list[str] = Field(default_factory=list)

    @field_validator("initial_version")
    @classmethod
    def _check_initial_version(cls, value: str) -> str:
        try:
            return f"v{parse_tag(value)}"
        except InvalidVersionError as exc:
            raise ValueError(str(exc)) from exc


class Config(_Section):
    git: GitConfig = Field(default_factory=GitConfig)
    linter: LinterConfig = Field(default_factory=LinterConfig)
    tests: UnitTestsConfig = Field(default_factory=UnitTestsConfig)
    releaser: ReleaserConfig = Field(default_factory=ReleaserConfig)


def load_config(root: Path) -> Config:
    """Load [tool.monotag] from ``root``/pyproject.toml.

    A missing file or table yields the defaults.

    Raises:
        ConfigError: If the table does not validate.
    """
    pyproject = root / "pyproject.toml"
    if not pyproject.exists():
        return Config()
    table = get_tool_table(load_pyproject(pyproject), TOOL_NAME)
    try:
        return Config.model_validate(table)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"invalid [tool.{TOOL_NAME}] configuration: {problems}") from exc
