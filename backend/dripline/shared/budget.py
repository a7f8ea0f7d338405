from __future__ import annotations

import time


class PassBudget:
    """Wall-clock allowance for one batch pass.

    Checked between items only; an item that has started is allowed to finish.
    """

    def __init__(self, seconds: float | None) -> None:
        self.seconds = None if seconds is None or seconds <= 0 else float(seconds)
        self._started = time.monotonic()

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def exhausted(self) -> bool:
        if self.seconds is None:
            return False
        return time.monotonic() - self._started >= self.seconds
