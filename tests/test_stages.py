from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from buildrelay.pipeline.checkpointing import RunState, Stage
from buildrelay.pipeline.errors import ResumptionError
from buildrelay.pipeline.budget import BudgetClock
from buildrelay.pipeline.executor import TimedExecutor
from buildrelay.pipeline.stages import BuildStage, PackageStage, StageMachine, StageOutcome


@dataclass
class _Handler:
    outcome: StageOutcome
    calls: int = 0

    def __call__(self) -> StageOutcome:
        self.calls += 1
        return self.outcome


@dataclass
class _NoopRunner:
    calls: list[list[str]] = field(default_factory=list)
    code: int = 0

    def run(self, argv, *, cwd=None, env=None) -> int:  # type: ignore[no-untyped-def]
        self.calls.append(list(argv))
        return self.code


def _machine(outcomes: dict[Stage, StageOutcome], single_step: bool = False) -> StageMachine:
    return StageMachine(handlers={s: _Handler(o) for s, o in outcomes.items()}, single_step=single_step)


@pytest.mark.parametrize("outcome", list(StageOutcome))
@pytest.mark.parametrize("stage", [Stage.INIT, Stage.BUILD, Stage.PACKAGE])
def test_stage_advances_only_on_success(tmp_path: Path, stage: Stage, outcome: StageOutcome) -> None:
    marker = tmp_path / "build-stage.txt"
    if stage is not Stage.INIT:
        marker.write_text(stage.value)
    state = RunState.load(marker)
    machine = _machine({s: StageOutcome.FAILURE for s in Stage if s is not Stage.DONE} | {stage: outcome}, True)

    result = machine.run(state)

    assert result is outcome
    if outcome is StageOutcome.SUCCESS:
        assert state.stage is stage.successor()
    else:
        assert state.stage is stage
    persisted = RunState.load(marker).stage if marker.exists() else Stage.INIT
    expected = state.stage if state.stage is not Stage.DONE else Stage.PACKAGE
    assert persisted is expected


def test_machine_chains_successful_stages(tmp_path: Path) -> None:
    marker = tmp_path / "build-stage.txt"
    state = RunState.load(marker)
    machine = _machine(
        {Stage.INIT: StageOutcome.SUCCESS, Stage.BUILD: StageOutcome.TIMEOUT, Stage.PACKAGE: StageOutcome.SUCCESS}
    )

    assert machine.run(state) is StageOutcome.TIMEOUT
    assert state.stage is Stage.BUILD
    assert marker.read_text() == "build"
    assert machine.handlers[Stage.PACKAGE].calls == 0  # type: ignore[attr-defined]


def test_machine_reaches_done_without_persisting_it(tmp_path: Path) -> None:
    marker = tmp_path / "build-stage.txt"
    state = RunState.load(marker)
    machine = _machine({s: StageOutcome.SUCCESS for s in (Stage.INIT, Stage.BUILD, Stage.PACKAGE)})

    assert machine.run(state) is StageOutcome.SUCCESS
    assert state.finished
    assert marker.read_text() == "package"


def test_marker_is_read_verbatim(tmp_path: Path) -> None:
    marker = tmp_path / "build-stage.txt"
    marker.write_text("package\n")
    assert RunState.load(marker).stage is Stage.PACKAGE

    marker.write_text("compile")
    with pytest.raises(ResumptionError):
        RunState.load(marker)

    marker.write_text("done")
    with pytest.raises(ResumptionError):
        RunState.load(marker)


def test_package_stage_verifies_output(tmp_path: Path) -> None:
    runner = _NoopRunner()
    out = tmp_path / "src" / "out"
    stage = PackageStage(runner=runner, output_dir=out, cwd=tmp_path)
    assert stage() is StageOutcome.VERIFICATION_FAILED
    assert runner.calls == []

    out.mkdir(parents=True)
    assert stage() is StageOutcome.SUCCESS

    failing = PackageStage(runner=_NoopRunner(code=1), output_dir=out, cwd=tmp_path, argv=["make", "dist"])
    assert failing() is StageOutcome.FAILURE


@pytest.mark.parametrize(
    ("code", "outcome", "settled"),
    [
        (0, StageOutcome.SUCCESS, False),
        (124, StageOutcome.TIMEOUT, True),
        (1, StageOutcome.FAILURE, False),
    ],
)
def test_build_stage_settles_and_syncs_only_on_timeout(
    tmp_path: Path, code: int, outcome: StageOutcome, settled: bool
) -> None:
    runner = _NoopRunner(code=code)
    sleeps: list[float] = []
    syncs: list[bool] = []
    clock = lambda: 0.0  # noqa: E731
    stage = BuildStage(
        executor=TimedExecutor(runner=runner, clock=clock),
        budget=BudgetClock(ceiling_s=3600, floor_s=600, clock=clock),
        argv=["npm", "run", "build"],
        cwd=tmp_path,
        settle_s=30,
        sleep=sleeps.append,
        sync=lambda: syncs.append(True),
    )

    assert stage() is outcome
    assert runner.calls[0][-3:] == ["npm", "run", "build"]
    assert runner.calls[0][5] == "3600s"
    assert sleeps == ([30] if settled else [])
    assert syncs == ([True] if settled else [])
