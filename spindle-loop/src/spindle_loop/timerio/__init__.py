from __future__ import annotations

from typing import TYPE_CHECKING

from spindle_core.operations import Sleep, SleepUntil
from spindle_loop._utils import _execute
from spindle_loop.lowlevel import checkpoint

if TYPE_CHECKING:
    from spindle_loop.typedefs import Coro


def sleep(time: float) -> Coro[None]:
    """Sleep coroutine."""
    if time <= 0:
        yield from checkpoint()
    else:
        yield from _execute(Sleep(time=time))
    return None


def sleep_until(deadline: float) -> Coro[None]:
    """Sleeps until the loop's clock reaches deadline."""
    yield from _execute(SleepUntil(when=deadline))
    return None
