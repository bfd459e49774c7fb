"""This example shows how to bridge spindle to modern Python "await" syntax.

Generator coroutines stay the native currency of the loop. Anything with an
``__await__`` that yields loop operations can be awaited from an ``async def``,
and the loop drives native coroutines the same way it drives generators.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from spindle_loop import create_task, run
from spindle_loop import gather as _gen_gather
from spindle_loop import sleep as _gen_sleep

if TYPE_CHECKING:
    from spindle_loop import Task
    from spindle_loop.typedefs import Coro

### Define "await" compatible sleep ###


@dataclass(slots=True, kw_only=True)
class Sleep:
    """Asynchonous sleep."""

    time: float

    def __await__(self) -> Coro[None]:
        """Yields timer instructions to event loop."""
        yield from _gen_sleep(self.time)


async def sleep(time: float) -> str:
    """Coroutine wrapping Sleep object."""
    await Sleep(time=time)
    return f"slept {time}s"


### Define "await" compatible gather ###


class Gather:
    """Gathers multiple tasks to await them as one."""

    def __init__(self, *tasks: Task) -> None:
        self.tasks = tasks

    def __await__(self) -> Coro[tuple]:
        """Wrapper around generator based spindle_loop.gather."""
        results = yield from _gen_gather(*self.tasks)
        return results


async def gather(*tasks: Task) -> tuple:
    """Coroutine wrapping Gather object."""
    return await Gather(*tasks)


async def entry() -> None:
    """Entry point for example."""
    start_time = time.monotonic()

    task1 = create_task(sleep(2), name="A")
    task2 = create_task(sleep(1), name="B")

    result1, result2 = await gather(task1, task2)

    print(f"Slept for {time.monotonic() - start_time:.2f}s in total")
    print(f"A: {result1}")
    print(f"B: {result2}")


if __name__ == "__main__":
    run(entry())
