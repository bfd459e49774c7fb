"""Shared test fixtures for spindle-loop."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from spindle_core.config import Settings
from spindle_loop.loop import Loop

if TYPE_CHECKING:
    from collections.abc import Iterator

    from spindle_core.clock import VirtualClock


@pytest.fixture
def settings() -> Settings:
    """Settings independent of the environment running the tests."""
    return Settings(_env_file=None, log_level="WARNING", debug=False)


@pytest.fixture
def loop(virtual_clock: VirtualClock, settings: Settings) -> Iterator[Loop]:
    """A manually managed loop on simulated time, closed after the test."""
    loop = Loop(clock=virtual_clock, settings=settings)
    yield loop
    loop.close()
