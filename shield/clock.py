"""Clocks.

Every engine component takes a zero-argument callable returning epoch
seconds.  Production passes ``time.time``; tests and replay tooling pass a
FakeClock and advance it explicitly, which is how sweeps and escalation
delays are exercised without sleeping.
"""

import time


def system_clock() -> float:
    return time.time()


class FakeClock:
    """Manually advanced clock.  Call the instance to read the time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, timestamp: float) -> None:
        self.now = timestamp
