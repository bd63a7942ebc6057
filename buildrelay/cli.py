from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from buildrelay.adapters.github.actions import set_output
from buildrelay.common.logging_config import configure_logging
from buildrelay.common.time_utils import format_duration
from buildrelay.pipeline.budget import remaining_budget_seconds
from buildrelay.pipeline.checkpointing import RunState
from buildrelay.pipeline.config import RelayConfig
from buildrelay.pipeline.errors import RelayError
from buildrelay.pipeline.runner import RelayRunner, read_build_version
from buildrelay.pipeline.signals import CancellationPolicy


app = typer.Typer(add_completion=False)
logger = logging.getLogger("buildrelay")

EXAMPLE_CONFIG = Path(__file__).resolve().parent / "relay_config.example.toml"


def _load_config(config: str) -> RelayConfig:
    try:
        return RelayConfig.load(Path(config).expanduser())
    except RelayError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


@app.command()
def run(
    config: str = typer.Option("relay_config.toml", help="Path to relay_config.toml"),
    finished: bool = typer.Option(
        False,
        "--finished/--no-finished",
        envvar="INPUT_FINISHED",
        help="The build already completed in an earlier invocation.",
    ),
    from_artifact: bool = typer.Option(
        False,
        "--from-artifact/--no-from-artifact",
        envvar="INPUT_FROM_ARTIFACT",
        help="Restore the last checkpoint before continuing.",
    ),
) -> None:
    """Advance the build by one invocation and report finished=true|false."""
    cfg = _load_config(config)
    log_file = configure_logging(logging.INFO, log_dir=str(cfg.resolve().logs_dir))
    logger.info("Logging to %s", log_file)

    try:
        with CancellationPolicy():
            relay = RelayRunner.from_config(cfg)
            done = relay.run(finished=finished, from_artifact=from_artifact)
    except RelayError as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=1) from exc

    value = "true" if done else "false"
    set_output("finished", value)
    typer.echo(f"finished={value}")


@app.command()
def status(
    config: str = typer.Option("relay_config.toml", help="Path to relay_config.toml"),
) -> None:
    """Show the build version, the persisted stage and the time budget."""
    cfg = _load_config(config)
    paths = cfg.resolve()

    table = Table(title="buildrelay")
    table.add_column("key")
    table.add_column("value")
    try:
        version = read_build_version(paths.version_file)
    except RelayError as exc:
        version = f"[red]{exc}[/red]"
    try:
        stage = RunState.load(paths.marker_path).stage.value
    except RelayError as exc:
        stage = f"[red]{exc}[/red]"
    table.add_row("version", version)
    table.add_row("stage", stage)
    table.add_row("work dir", str(paths.work_dir))
    table.add_row("job ceiling", format_duration(cfg.budget.job_ceiling_minutes * 60))
    table.add_row("minimum timeout", format_duration(cfg.budget.min_timeout_minutes * 60))
    table.add_row("store", cfg.store.kind)
    Console().print(table)


@app.command()
def budget(
    elapsed_minutes: float = typer.Option(0.0, help="Minutes already spent in the job"),
    config: str = typer.Option("relay_config.toml", help="Path to relay_config.toml"),
) -> None:
    """Print the build stage timeout for a given elapsed time."""
    cfg = _load_config(config)
    seconds = remaining_budget_seconds(
        elapsed_minutes * 60,
        cfg.budget.job_ceiling_minutes * 60,
        cfg.budget.min_timeout_minutes * 60,
    )
    typer.echo(f"{seconds} seconds: {format_duration(seconds)}")


@app.command()
def init_config(
    path: str = typer.Argument(
        "relay_config.toml",
        help="Where to write the relay configuration TOML",
    ),
) -> None:
    """Write an example relay_config.toml."""
    if not EXAMPLE_CONFIG.exists():
        raise RuntimeError(f"Missing template file: {EXAMPLE_CONFIG}")

    out = Path(path).expanduser()
    if out.exists():
        raise typer.BadParameter(f"Refusing to overwrite existing file: {out}")

    out.write_text(EXAMPLE_CONFIG.read_text())
    typer.echo(f"Wrote {out} (edit it, then run: buildrelay run --config {out})")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
