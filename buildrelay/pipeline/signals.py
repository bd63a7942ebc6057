from __future__ import annotations

import logging
import signal
from dataclasses import dataclass, field
from types import FrameType, TracebackType
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CancellationPolicy:
    """Keeps external interrupts from killing the relay mid-checkpoint.

    While active, SIGINT/SIGTERM delivered to this process are logged and
    otherwise ignored, so an archive or upload in flight is never abandoned.
    The handler is a Python function rather than SIG_IGN: exec'd children
    start with default dispositions again and the watchdog's SIGINT still
    stops the build.
    """

    signals: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM)
    received: list[int] = field(default_factory=list)
    _previous: dict[int, Any] = field(default_factory=dict, repr=False)

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        self.received.append(signum)
        logger.warning("Ignoring %s; the relay finishes its checkpoint first", signal.Signals(signum).name)

    def __enter__(self) -> "CancellationPolicy":
        for sig in self.signals:
            self._previous[sig] = signal.signal(sig, self._handle)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()
