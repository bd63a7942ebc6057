from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


def set_output(name: str, value: str, output_file: str | None = None) -> bool:
    """Append a step output to $GITHUB_OUTPUT.

    Returns False when not running inside Actions (no output file).
    """
    target = output_file if output_file is not None else os.environ.get("GITHUB_OUTPUT", "")
    if not target:
        return False
    with open(Path(target), "a", encoding="utf-8") as fh:
        if "\n" in value:
            delimiter = f"ghadelimiter_{uuid.uuid4()}"
            fh.write(f"{name}<<{delimiter}\n{value}\n{delimiter}\n")
        else:
            fh.write(f"{name}={value}\n")
    logger.debug("Set output %s=%s", name, value)
    return True
