from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Protocol, Sequence

from buildrelay.common.time_utils import format_duration
from buildrelay.pipeline.budget import BudgetClock
from buildrelay.pipeline.checkpointing import RunState, Stage
from buildrelay.pipeline.executor import CommandRunner, ExecStatus, TimedExecutor

logger = logging.getLogger(__name__)


class StageOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILURE = "failure"
    VERIFICATION_FAILED = "verification_failed"


class StageHandler(Protocol):
    def __call__(self) -> StageOutcome:
        ...


def sync_filesystem() -> None:
    logger.info("Syncing filesystem")
    os.sync()


@dataclass
class CommandStage:
    """A stage that is a single command run to completion without a deadline."""

    runner: CommandRunner
    argv: Sequence[str]
    cwd: Path

    def __call__(self) -> StageOutcome:
        code = self.runner.run(self.argv, cwd=self.cwd)
        if code == 0:
            return StageOutcome.SUCCESS
        logger.error("%s failed with code %s", " ".join(self.argv), code)
        return StageOutcome.FAILURE


@dataclass
class BuildStage:
    """The long compile, bounded by what is left of the job window."""

    executor: TimedExecutor
    budget: BudgetClock
    argv: Sequence[str]
    cwd: Path
    settle_s: float = 30.0
    sleep: Callable[[float], None] = time.sleep
    sync: Callable[[], None] = sync_filesystem

    def __call__(self) -> StageOutcome:
        logger.info("Time elapsed in job: %s", format_duration(self.budget.elapsed()))
        deadline = self.budget.remaining()
        result = self.executor.run(self.argv, cwd=self.cwd, deadline_s=deadline)
        if result.status is ExecStatus.SUCCESS:
            return StageOutcome.SUCCESS
        if result.status is ExecStatus.TIMEOUT:
            logger.info("Build timed out, will resume in the next invocation")
            logger.info("Waiting %.0f seconds for build processes to finish cleanup", self.settle_s)
            self.sleep(self.settle_s)
            self.sync()
            return StageOutcome.TIMEOUT
        return StageOutcome.FAILURE


@dataclass
class PackageStage:
    """Materializes the build output and checks that it is really there."""

    runner: CommandRunner
    output_dir: Path
    cwd: Path
    argv: Sequence[str] = field(default_factory=tuple)

    def __call__(self) -> StageOutcome:
        if self.argv:
            code = self.runner.run(self.argv, cwd=self.cwd)
            if code != 0:
                logger.error("Package command failed with code %s", code)
                return StageOutcome.FAILURE
        if not self.output_dir.is_dir():
            logger.error("Expected build output at %s is missing", self.output_dir)
            return StageOutcome.VERIFICATION_FAILED
        logger.info("Found output directory at %s", self.output_dir)
        return StageOutcome.SUCCESS


@dataclass
class StageMachine:
    """Drives ``init -> build -> package -> done``.

    A stage advances (and the marker is rewritten) only when its handler
    reports SUCCESS. Any other outcome stops the machine with the marker
    untouched, so the next invocation retries the same stage.
    """

    handlers: Mapping[Stage, StageHandler]
    single_step: bool = False

    def run(self, state: RunState) -> StageOutcome:
        outcome = StageOutcome.FAILURE
        while not state.finished:
            logger.info("=== Stage: %s ===", state.stage.value)
            outcome = self.handlers[state.stage]()
            if outcome is not StageOutcome.SUCCESS:
                logger.info("Stage %s ended with %s", state.stage.value, outcome.value)
                return outcome
            logger.info("Stage %s completed successfully", state.stage.value)
            state.advance()
            if self.single_step:
                break
        return outcome
