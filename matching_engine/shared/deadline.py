"""Per-request time budget."""
from __future__ import annotations

import time
from typing import Callable

from .errors import MatchTimeout


class Deadline:
    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def check(self, stage: str) -> None:
        if self.expired:
            raise MatchTimeout(f"Deadline of {self.seconds:.1f}s exceeded during {stage}", stage=stage)
