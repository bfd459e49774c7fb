"""Root conftest — pre-import workspace packages and shared fixtures.

Without this, pytest's directory traversal registers package directories
as namespace packages before test collection, which shadows the real packages
installed from <pkg>/src/.  Importing them here (while pythonpath is already
in effect) caches the correct module in sys.modules.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pytest

import spindle_core  # noqa: F401
import spindle_loop  # noqa: F401
from spindle_core.clock import VirtualClock
from spindle_loop.loop import run

if TYPE_CHECKING:
    from collections.abc import Callable

    from spindle_loop.typedefs import Coro


@dataclass(slots=True, kw_only=True)
class TimingContext:
    """Captures elapsed time and provides tolerance-aware assertions."""

    _start: float = field(default=0, repr=False)
    _end: float = field(default=0, repr=False)

    def start(self) -> None:
        """Record the start time."""
        self._start = time.monotonic()

    def stop(self) -> None:
        """Record the end time."""
        self._end = time.monotonic()

    @property
    def elapsed(self) -> float:
        """Return elapsed seconds since start."""
        if self._end == 0.0:
            return time.monotonic() - self._start
        return self._end - self._start

    def assert_elapsed_between(
        self, lower: float, upper: float, *, msg: str = ""
    ) -> None:
        """Assert elapsed time is within [lower, upper] seconds."""
        elapsed = self.elapsed
        context = f" ({msg})" if msg else ""
        assert lower <= elapsed <= upper, (  # noqa: S101
            f"Expected elapsed time in [{lower}, {upper}]s, got {elapsed:.3f}s{context}"
        )


@pytest.fixture
def run_coro() -> Callable[[Coro], object]:
    """Run a generator coroutine on a fresh event loop, in real time."""

    def _run(coro: Coro) -> object:
        return run(coro)

    return _run


@pytest.fixture
def virtual_clock() -> VirtualClock:
    """A clock whose sleeps finish instantly, starting at zero."""
    return VirtualClock()


@pytest.fixture
def run_virtual(virtual_clock: VirtualClock) -> Callable[[Coro], object]:
    """Run a generator coroutine on a fresh event loop, in simulated time."""

    def _run(coro: Coro) -> object:
        return run(coro, clock=virtual_clock)

    return _run


@pytest.fixture
def timing() -> TimingContext:
    """Provide a timing context for measuring elapsed time in tests."""
    return TimingContext()
