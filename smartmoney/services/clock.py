"""Injectable time source.

TTL checks and signal lookback windows read time through a Clock so tests
can move time forward without sleeping.
"""

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Current time as Unix epoch seconds."""
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> float:
        return time.time()
