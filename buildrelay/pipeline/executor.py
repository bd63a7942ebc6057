from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Protocol, Sequence

from buildrelay.common.time_utils import format_duration, watchdog_duration

logger = logging.getLogger(__name__)

# Exit status of coreutils timeout when the deadline fired. Reserved: never
# reported for any other failure.
EXIT_DEADLINE_EXCEEDED = 124
# Exit status when the watchdog had to escalate to SIGKILL (128 + 9).
EXIT_KILLED = 137
EXIT_NOT_FOUND = 127


class CommandRunner(Protocol):
    """Runs one external command to completion and reports its exit code."""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> int:
        ...


@dataclass
class SubprocessRunner:
    """CommandRunner backed by subprocess; output streams to our stdout/stderr."""

    extra_env: dict[str, str] = field(default_factory=dict)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> int:
        full_env = dict(os.environ)
        full_env.update(self.extra_env)
        if env:
            full_env.update(env)
        logger.info("Running: %s", " ".join(argv))
        try:
            res = subprocess.run(list(argv), cwd=str(cwd) if cwd else None, env=full_env, check=False)
        except FileNotFoundError as exc:
            logger.error("Executable not found: %s (%s)", argv[0], exc)
            return EXIT_NOT_FOUND
        return res.returncode


class ExecStatus(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILURE = "failure"


@dataclass(frozen=True)
class ExecResult:
    status: ExecStatus
    exit_code: int
    elapsed_s: float

    @property
    def ok(self) -> bool:
        return self.status is ExecStatus.SUCCESS


@dataclass
class TimedExecutor:
    """Runs a command under a wall-clock deadline enforced by a watchdog process.

    The watchdog is coreutils ``timeout``: it sends SIGINT at the deadline and
    SIGKILL once ``kill_grace_s`` more seconds have passed. A deadline hit is
    reported as ``ExecStatus.TIMEOUT``; callers checkpoint and stop instead of
    retrying.
    """

    runner: CommandRunner
    timeout_binary: str = "timeout"
    kill_grace_s: int = 300
    clock: Callable[[], float] = time.monotonic

    def watchdog_argv(self, argv: Sequence[str], deadline_s: int) -> list[str]:
        return [
            self.timeout_binary,
            "-k",
            watchdog_duration(self.kill_grace_s),
            "-s",
            "INT",
            watchdog_duration(deadline_s),
            *argv,
        ]

    def run(self, argv: Sequence[str], *, cwd: Path, deadline_s: int) -> ExecResult:
        logger.info("Timeout: %s", format_duration(deadline_s))
        started = self.clock()
        code = self.runner.run(self.watchdog_argv(argv, deadline_s), cwd=cwd)
        elapsed = max(0.0, self.clock() - started)

        status = self._classify(code, elapsed, deadline_s)
        if status is ExecStatus.TIMEOUT:
            logger.warning("Timeout reached after %s", format_duration(elapsed))
        elif status is ExecStatus.SUCCESS:
            logger.info("Finished in %s", format_duration(elapsed))
        else:
            logger.error("Exited with code %s after %s", code, format_duration(elapsed))
        return ExecResult(status=status, exit_code=code, elapsed_s=elapsed)

    @staticmethod
    def _classify(code: int, elapsed_s: float, deadline_s: int) -> ExecStatus:
        if code == 0:
            return ExecStatus.SUCCESS
        if code == EXIT_DEADLINE_EXCEEDED:
            return ExecStatus.TIMEOUT
        # 137 is also what a child killed by the OOM killer looks like.
        if code == EXIT_KILLED and elapsed_s >= deadline_s:
            return ExecStatus.TIMEOUT
        return ExecStatus.FAILURE
