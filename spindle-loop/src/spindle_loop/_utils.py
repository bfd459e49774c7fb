from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

from spindle_core.operations import TimerOperation
from spindle_core.results import TimerResult

if TYPE_CHECKING:
    from spindle_loop.loop import Loop
    from spindle_loop.typedefs import Coro


def _execute[T: TimerResult](op: TimerOperation[T]) -> Coro[T]:
    """Unwrap a timer completion into the expected result type."""
    expected = op.result_type
    completion = yield cast("TimerOperation[TimerResult]", op)
    if completion is not None and isinstance(result := completion.unwrap(), expected):
        return result
    elif completion is None:
        raise RuntimeError("Low level coroutine was sent None")

    msg = f"Expected {expected.__name__}, got {type(completion)}. Expected {expected}"
    raise TypeError(msg)


@dataclass(kw_only=True)
class _Local(threading.local):
    """Wrapper around threading.local for proper type annotations."""

    """The loop currently driving tasks on this thread."""
    loop: Loop | None = None


_local = _Local()

__all__ = [
    "_execute",
    "_local",
]
