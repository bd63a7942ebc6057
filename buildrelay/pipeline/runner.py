from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from buildrelay.pipeline.archiver import ArchiveCodec, TarArchiveCodec
from buildrelay.pipeline.budget import BudgetClock
from buildrelay.pipeline.checkpointing import RunState, Stage
from buildrelay.pipeline.config import CommandSpec, RelayConfig, ResolvedPaths
from buildrelay.pipeline.errors import ArchiveError, ConfigurationError, ResumptionError
from buildrelay.pipeline.executor import CommandRunner, SubprocessRunner, TimedExecutor
from buildrelay.pipeline.stages import (
    BuildStage,
    CommandStage,
    PackageStage,
    StageMachine,
    StageOutcome,
    sync_filesystem,
)
from buildrelay.pipeline.transport import ArtifactStoreError, ArtifactTransport, RemoteStore

logger = logging.getLogger(__name__)


def read_build_version(path: Path) -> str:
    try:
        version = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigurationError(f"Failed to read {path.name}: {exc}") from exc
    if not version:
        raise ConfigurationError(f"{path} is empty")
    return version


def build_transport(config: RelayConfig) -> ArtifactTransport:
    arts = config.artifacts
    return ArtifactTransport(
        store=build_store(config),
        attempts=arts.upload_attempts,
        retry_delay_s=arts.retry_delay_seconds,
        compression_level=arts.compression_level,
    )


def build_store(config: RelayConfig) -> RemoteStore:
    if config.store.kind == "local":
        from buildrelay.adapters.local.store import LocalArtifactStore

        return LocalArtifactStore(root=Path(config.store.local_dir).expanduser())

    from buildrelay.adapters.github.artifact_client import GitHubArtifactStore

    try:
        return GitHubArtifactStore.from_env()
    except ArtifactStoreError as exc:
        raise ConfigurationError(str(exc)) from exc


@dataclass
class RelayRunner:
    """One invocation of the relay: restore, advance, publish."""

    config: RelayConfig
    paths: ResolvedPaths
    runner: CommandRunner
    archiver: ArchiveCodec
    transport: ArtifactTransport | None = None
    transport_factory: Callable[[], ArtifactTransport] | None = None
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    sync: Callable[[], None] = sync_filesystem

    @classmethod
    def from_config(cls, config: RelayConfig) -> "RelayRunner":
        return cls(
            config=config,
            paths=config.resolve(),
            runner=SubprocessRunner(extra_env=dict(config.env)),
            archiver=TarArchiveCodec(),
            transport_factory=lambda: build_transport(config),
        )

    def _transport(self) -> ArtifactTransport:
        # Built on first use; a finished run never touches the store.
        if self.transport is None:
            if self.transport_factory is None:
                raise ConfigurationError("No artifact transport configured")
            self.transport = self.transport_factory()
        return self.transport

    def run(self, *, finished: bool, from_artifact: bool) -> bool:
        """Advance the build by one invocation and report whether it is done."""
        version = read_build_version(self.paths.version_file)
        logger.info("Building version: %s (from %s)", version, self.paths.version_file.name)
        logger.info("finished: %s, from_artifact: %s", finished, from_artifact)
        if finished:
            return True
        # Store credentials are checked before any work is done.
        self._transport()

        budget = BudgetClock(
            ceiling_s=self.config.budget.job_ceiling_minutes * 60,
            floor_s=self.config.budget.min_timeout_minutes * 60,
            clock=self.clock,
        )
        placeholders = self._placeholders(version)
        self.paths.ensure_dirs()
        self._run_setup(self.config.commands.toolchain, placeholders)

        if from_artifact:
            self._restore_checkpoint()
            self._run_setup(self.config.commands.resume_setup, placeholders)
        else:
            logger.info("Initializing fresh build environment")
            self._run_setup(self.config.commands.fresh_setup, placeholders)

        state = RunState.load(self.paths.marker_path)
        machine = self.build_machine(budget)
        try:
            outcome = machine.run(state)
        except Exception:
            logger.exception("Build error in stage %s", state.stage.value)
            outcome = StageOutcome.FAILURE
        logger.info("Invocation ended at stage %s (%s)", state.stage.value, outcome.value)

        if state.stage is Stage.DONE and self._publish_final(version):
            return True
        self._publish_checkpoint()
        return False

    def build_machine(self, budget: BudgetClock) -> StageMachine:
        cmds = self.config.commands
        project = self.paths.project_dir
        executor = TimedExecutor(
            runner=self.runner,
            timeout_binary=cmds.timeout_binary,
            kill_grace_s=int(self.config.budget.kill_grace_minutes * 60),
            clock=self.clock,
        )
        handlers = {
            Stage.INIT: CommandStage(runner=self.runner, argv=cmds.init, cwd=project),
            Stage.BUILD: BuildStage(
                executor=executor,
                budget=budget,
                argv=cmds.build,
                cwd=project,
                settle_s=self.config.budget.timeout_settle_seconds,
                sleep=self.sleep,
                sync=self.sync,
            ),
            Stage.PACKAGE: PackageStage(
                runner=self.runner,
                output_dir=self.paths.output_dir,
                cwd=project,
                argv=cmds.package,
            ),
        }
        return StageMachine(handlers=handlers, single_step=cmds.single_step)

    def _placeholders(self, version: str) -> dict[str, str]:
        prefix = self.config.workspace.tag_prefix
        tag = version if not prefix or version.startswith(prefix) else f"{prefix}{version}"
        return {
            "version": version,
            "tag": tag,
            "work_dir": str(self.paths.work_dir),
            "source_dir": str(self.paths.source_dir),
            "project_dir": str(self.paths.project_dir),
        }

    def _run_setup(self, specs: Sequence[CommandSpec], placeholders: dict[str, str]) -> None:
        for spec in specs:
            try:
                argv = [arg.format(**placeholders) for arg in spec.argv]
            except (KeyError, IndexError, ValueError) as exc:
                raise ConfigurationError(f"Bad placeholder in command {spec.argv}: {exc}") from exc
            code = self.runner.run(argv, cwd=self.paths.command_cwd(spec.cwd))
            if code != 0:
                logger.warning("%s exited with code %s, continuing", argv[0], code)

    def _restore_checkpoint(self) -> None:
        arts = self.config.artifacts
        download_dir = self.paths.download_dir
        download_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Downloading previous build artifact %s", arts.checkpoint_name)
        self._transport().fetch(arts.checkpoint_name, download_dir)

        archive = download_dir / arts.checkpoint_archive
        if not archive.is_file():
            raise ResumptionError(f"Checkpoint {arts.checkpoint_name!r} does not contain {archive.name}")
        try:
            self.archiver.extract(archive, self.paths.work_dir)
        except ArchiveError as exc:
            raise ResumptionError(f"Checkpoint could not be extracted: {exc}") from exc
        shutil.rmtree(download_dir, ignore_errors=True)

    def _publish_final(self, version: str) -> bool:
        arts = self.config.artifacts
        out = self.paths.output_dir
        package_path = self.paths.work_dir / arts.final_archive.format(version=version)
        logger.info("Build completed successfully, packaging %s", package_path.name)
        try:
            self.archiver.create(out.parent, [out.name], package_path, arts.final_compression)
        except ArchiveError as exc:
            logger.error("Package creation failed: %s", exc)
            return False

        name = arts.final_name.format(version=version)
        published = self._transport().publish(
            name, [package_path], self.paths.work_dir, retention_days=arts.final_retention_days
        )
        if not published:
            logger.error("Final artifact %s was not uploaded", name)
        return True

    def _publish_checkpoint(self) -> None:
        arts = self.config.artifacts
        work = self.paths.work_dir
        logger.info("Build incomplete, creating checkpoint artifact")
        self.sleep(self.config.budget.checkpoint_settle_seconds)
        self.sync()
        self.sync()

        entries = [self.paths.source_dir.relative_to(work).as_posix()]
        if self.paths.marker_path.exists():
            entries.append(self.paths.marker_path.relative_to(work).as_posix())
        archive = work / arts.checkpoint_archive
        try:
            self.archiver.create(work, entries, archive, arts.checkpoint_compression)
        except ArchiveError as exc:
            logger.error("Checkpoint archive failed: %s", exc)
            return
        self._transport().publish(
            arts.checkpoint_name, [archive], work, retention_days=arts.checkpoint_retention_days
        )
