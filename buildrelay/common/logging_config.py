from __future__ import annotations

import logging
from pathlib import Path
from typing import Final, Sequence


DEFAULT_LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_FILE_NAME: Final[str] = "run.log"
# Per-request chatter from the HTTP stack around every artifact upload.
NOISY_LOGGERS: Final[tuple[str, ...]] = ("urllib3", "requests")


def configure_logging(
    level: int = logging.INFO,
    log_dir: str | None = None,
    *,
    quiet: Sequence[str] = NOISY_LOGGERS,
) -> Path | None:
    """Configure standard library logging for one relay invocation.

    Logs go to stderr, where the CI runner captures them, and, if log_dir is
    provided, are appended to '<log_dir>/run.log' so every invocation of the
    same build leaves its record on the runner's disk. Returns the log file
    path, if any.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file: Path | None = None
    if log_dir is not None:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        log_file = Path(log_dir) / LOG_FILE_NAME
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=level, format=DEFAULT_LOG_FORMAT, handlers=handlers, force=True)
    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return log_file
