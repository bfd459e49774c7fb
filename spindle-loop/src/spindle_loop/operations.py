"""This namespace includes extra operations for the event loop.

This extends the timer operations provided by spindle_core.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spindle_loop.typedefs import TaskID


@dataclass
class WaitsOn:
    """For dependency relationships between tasks.

    The yielding task is resumed once any of the tasks finish.
    """

    task_ids: tuple[TaskID, ...]

    """Whether cancellation may interrupt the wait."""
    cancellable: bool = True


@dataclass
class Park:
    """Parks the yielding task until resumed by another task."""


@dataclass
class Checkpoint:
    """Sentinel that yields control back to event loop."""
