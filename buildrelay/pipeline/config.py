from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from buildrelay.pipeline.errors import ConfigurationError


def _expand(path: str) -> Path:
    return Path(os.path.expanduser(path)).resolve()


def _read_toml(path: Path) -> dict[str, Any]:
    return tomllib.loads(path.read_bytes().decode("utf-8"))


class WorkspaceConfig(BaseModel):
    """Where the build lives on the runner's disk."""

    work_dir: str = Field(default="~/relay-build")
    source_dir: str = Field(default="src", description="Checkpointed tree, relative to work_dir.")
    project_dir: str = Field(
        default="src/project",
        description="Directory the stage commands run in, relative to work_dir.",
    )
    output_dir: str = Field(
        default="src/out",
        description="Build output that becomes the final artifact, relative to work_dir.",
    )
    marker_name: str = Field(default="build-stage.txt")
    version_file: str = Field(
        default="build_version.txt",
        description="Relative paths resolve against $GITHUB_WORKSPACE, else the current directory.",
    )
    tag_prefix: str = Field(default="v", description="Prefix added to the version to form the source tag.")


class BudgetConfig(BaseModel):
    job_ceiling_minutes: float = Field(default=270.0, gt=0)
    min_timeout_minutes: float = Field(default=10.0, ge=0)
    kill_grace_minutes: float = Field(default=5.0, ge=0)
    timeout_settle_seconds: float = Field(default=30.0, ge=0)
    checkpoint_settle_seconds: float = Field(default=5.0, ge=0)

    @model_validator(mode="after")
    def _floor_below_ceiling(self) -> "BudgetConfig":
        if self.min_timeout_minutes > self.job_ceiling_minutes:
            raise ValueError("budget.min_timeout_minutes must not exceed budget.job_ceiling_minutes")
        return self


class CommandSpec(BaseModel):
    """One opaque external step; only its exit status is observed."""

    argv: list[str]
    cwd: Literal["work", "source", "project"] = Field(default="project")


class CommandsConfig(BaseModel):
    timeout_binary: str = Field(default="timeout", description="'gtimeout' on macOS with coreutils.")
    toolchain: list[CommandSpec] = Field(
        default_factory=list,
        description="Run on every invocation before anything else (fresh runner each time).",
    )
    fresh_setup: list[CommandSpec] = Field(
        default_factory=list,
        description="Run when not resuming, e.g. clone the tag and install dependencies.",
    )
    resume_setup: list[CommandSpec] = Field(
        default_factory=list,
        description="Run after a checkpoint was restored.",
    )
    init: list[str] = Field(default_factory=lambda: ["npm", "run", "init", "--", "--no-history"])
    build: list[str] = Field(default_factory=lambda: ["npm", "run", "build"])
    package: list[str] = Field(
        default_factory=list,
        description="Optional; the package stage always verifies the output directory.",
    )
    single_step: bool = Field(
        default=False,
        description="Run at most one stage per invocation instead of chaining successes.",
    )


class ArtifactsConfig(BaseModel):
    checkpoint_name: str = Field(default="build-artifact")
    checkpoint_archive: str = Field(default="build-state.tar.gz")
    checkpoint_retention_days: int = Field(default=1, ge=1)
    checkpoint_compression: Literal["gz", "xz", "none"] = Field(default="gz")
    final_name: str = Field(default="build-output-{version}")
    final_archive: str = Field(default="build-out-{version}.tar.xz")
    final_retention_days: int = Field(default=7, ge=1)
    final_compression: Literal["gz", "xz", "none"] = Field(default="xz")
    upload_attempts: int = Field(default=5, ge=1)
    retry_delay_seconds: float = Field(default=10.0, ge=0)
    compression_level: int = Field(
        default=0,
        ge=0,
        le=9,
        description="Zip level used by the store; archives are already compressed.",
    )


class StoreConfig(BaseModel):
    kind: Literal["github", "local"] = Field(default="github")
    local_dir: str = Field(default="~/.buildrelay/artifacts")


class RelayConfig(BaseModel):
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    env: dict[str, str] = Field(default_factory=lambda: {"PYTHONUNBUFFERED": "1"})
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @classmethod
    def load(cls, path: Path) -> "RelayConfig":
        if not path.exists():
            return cls()
        try:
            raw = _read_toml(path)
            return cls.model_validate(raw)
        except (OSError, ValueError, ValidationError) as exc:
            raise ConfigurationError(f"Invalid relay configuration {path}: {exc}") from exc

    def resolve(self) -> "ResolvedPaths":
        ws = self.workspace
        work = _expand(ws.work_dir)
        version_file = Path(os.path.expanduser(ws.version_file))
        if not version_file.is_absolute():
            base = Path(os.environ.get("GITHUB_WORKSPACE") or os.getcwd())
            version_file = base / version_file
        return ResolvedPaths(
            work_dir=work,
            source_dir=work / ws.source_dir,
            project_dir=work / ws.project_dir,
            output_dir=work / ws.output_dir,
            marker_path=work / ws.marker_name,
            download_dir=work / "artifact",
            logs_dir=work / "logs",
            version_file=version_file.resolve(),
        )


class ResolvedPaths(BaseModel):
    work_dir: Path
    source_dir: Path
    project_dir: Path
    output_dir: Path
    marker_path: Path
    download_dir: Path
    logs_dir: Path
    version_file: Path

    def ensure_dirs(self) -> None:
        for p in (self.work_dir, self.source_dir, self.logs_dir):
            p.mkdir(parents=True, exist_ok=True)

    def command_cwd(self, where: str) -> Path:
        return {"work": self.work_dir, "source": self.source_dir, "project": self.project_dir}[where]
