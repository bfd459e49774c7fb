"""Spindle Loop package."""

__version__ = "0.1.0"

from spindle_loop.cancellation import fail_after, move_on_after
from spindle_loop.exceptions import (
    Cancelled,
    DeadlockError,
    InvalidStateError,
    LoopClosedError,
)
from spindle_loop.loop import Loop, LoopState, run
from spindle_loop.task import (
    CancelScope,
    Task,
    TaskGroup,
    create_task,
    gather,
    open_task_group,
)
from spindle_loop.timerio import sleep, sleep_until

__all__ = [
    "CancelScope",
    "Cancelled",
    "DeadlockError",
    "InvalidStateError",
    "Loop",
    "LoopClosedError",
    "LoopState",
    "Task",
    "TaskGroup",
    "create_task",
    "fail_after",
    "gather",
    "move_on_after",
    "open_task_group",
    "run",
    "sleep",
    "sleep_until",
]
