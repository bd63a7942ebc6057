from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Callable


def remaining_budget_seconds(elapsed_s: float, ceiling_s: float, floor_s: float) -> int:
    """Time left for a bounded stage, in whole seconds.

    Returns ``max(ceiling - elapsed, floor)`` rounded down. The floor wins even
    when the job window is already spent: a late stage still gets a usable
    timeout and makes progress, at the price of possibly overrunning the
    runner's own deadline.
    """
    elapsed_s = max(0.0, float(elapsed_s))
    remaining = max(float(ceiling_s) - elapsed_s, float(floor_s))
    return int(math.floor(remaining))


@dataclass
class BudgetClock:
    """Measures elapsed time since the invocation started."""

    ceiling_s: float
    floor_s: float
    clock: Callable[[], float] = time.monotonic
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def elapsed(self) -> float:
        return max(0.0, self.clock() - self.started_at)

    def remaining(self) -> int:
        return remaining_budget_seconds(self.elapsed(), self.ceiling_s, self.floor_s)
