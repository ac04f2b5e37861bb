"""Time sources for the engine. Timestamps are integer Unix seconds."""

import time

from stakeledger.staking.models import SECONDS_PER_DAY


class SystemClock:
    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """Clock advanced by hand (tests, simulations, the demo script)."""

    def __init__(self, start: int = 1_700_000_000):
        self._now = start

    def now(self) -> int:
        return self._now

    def set(self, timestamp: int) -> None:
        if timestamp < self._now:
            raise ValueError("Clock cannot move backwards")
        self._now = timestamp

    def advance(self, seconds: int = 0, days: int = 0) -> int:
        self.set(self._now + seconds + days * SECONDS_PER_DAY)
        return self._now
