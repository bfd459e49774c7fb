from __future__ import annotations

from typing import TYPE_CHECKING

from spindle_loop._utils import _local
from spindle_loop.operations import Checkpoint

if TYPE_CHECKING:
    from spindle_loop.loop import Loop
    from spindle_loop.task import Task
    from spindle_loop.typedefs import Coro, TaskID


def get_running_loop() -> Loop:
    """Gets the loop currently driving tasks on this thread."""
    if _local.loop is None:
        raise RuntimeError("No event loop running")

    return _local.loop


def get_current_task() -> Task:
    """Gets the currently executing task from the loop."""
    return get_running_loop().current_task


def current_time() -> float:
    """Gets the running loop's clock time."""
    return get_running_loop().time()


def unpark(task_id: TaskID) -> None:
    """Unparks a parked task.

    Args:
        task_id: The id of the task to unpark
    """
    get_running_loop().unpark_queue.append(task_id)


def checkpoint() -> Coro[None]:
    """Nop that yields control back to event loop."""
    yield Checkpoint()
