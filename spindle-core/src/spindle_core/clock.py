"""Time sources the timer worker sleeps on."""

import time
from dataclasses import dataclass, field
from typing import Protocol, override


class Clock(Protocol):
    """Anything that can tell monotonic time and block for a duration."""

    def monotonic(self) -> float:
        """Current monotonic time in seconds."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block the calling thread for the given number of seconds."""
        ...


class MonotonicClock:
    """Real time, backed by the time module."""

    def monotonic(self) -> float:
        """Current monotonic time in seconds."""
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        """Block for seconds of real time."""
        if seconds > 0:
            time.sleep(seconds)

    @override
    def __repr__(self) -> str:
        """Pretty printing."""
        return "MonotonicClock"


@dataclass(slots=True)
class VirtualClock:
    """Simulated time. Sleeping jumps forward instantly.

    Makes timing assertions exact: a loop driven by this clock finishes a
    two second sleep without blocking, and ``monotonic`` reports exactly two
    seconds later.
    """

    """Current simulated time."""
    now: float = field(default=0.0)

    def monotonic(self) -> float:
        """Current simulated time."""
        return self.now

    def sleep(self, seconds: float) -> None:
        """Advances simulated time."""
        if seconds > 0:
            self.now += seconds

    def advance(self, seconds: float) -> None:
        """Moves time forward without anyone sleeping."""
        if seconds < 0:
            raise ValueError("Cannot move a clock backwards")
        self.now += seconds
