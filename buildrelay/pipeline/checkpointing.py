from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from buildrelay.pipeline.errors import ResumptionError

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    INIT = "init"
    BUILD = "build"
    PACKAGE = "package"
    DONE = "done"

    def successor(self) -> "Stage":
        order = list(Stage)
        idx = order.index(self)
        if idx + 1 >= len(order):
            raise ValueError(f"{self.value} has no successor")
        return order[idx + 1]


PERSISTED_STAGES: tuple[Stage, ...] = (Stage.INIT, Stage.BUILD, Stage.PACKAGE)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text)
    os.replace(tmp, path)


@dataclass
class RunState:
    """The build's position in the stage sequence, backed by a marker file.

    The marker holds a single stage name. It is read once per invocation and
    rewritten right after a stage succeeds; the stage is never inferred from
    anything else on disk.
    """

    marker_path: Path
    stage: Stage = Stage.INIT

    @classmethod
    def load(cls, marker_path: Path) -> "RunState":
        if not marker_path.exists():
            logger.info("No stage marker at %s, starting from %s", marker_path, Stage.INIT.value)
            return cls(marker_path=marker_path)

        raw = marker_path.read_text().strip()
        try:
            stage = Stage(raw)
        except ValueError:
            raise ResumptionError(f"Unknown stage {raw!r} in {marker_path}") from None
        if stage not in PERSISTED_STAGES:
            raise ResumptionError(f"Stage {raw!r} in {marker_path} is not a resumable stage")
        logger.info("Resuming from stage: %s", stage.value)
        return cls(marker_path=marker_path, stage=stage)

    @property
    def finished(self) -> bool:
        return self.stage is Stage.DONE

    def advance(self) -> Stage:
        nxt = self.stage.successor()
        if nxt in PERSISTED_STAGES:
            _atomic_write_text(self.marker_path, nxt.value)
        self.stage = nxt
        return nxt
