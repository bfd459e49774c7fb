from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from spindle_core.log import get_logger
from spindle_loop.exceptions import Cancelled
from spindle_loop.lowlevel import get_current_task
from spindle_loop.task import CancelScope
from spindle_loop.timerio import sleep

if TYPE_CHECKING:
    from collections.abc import Generator

    from spindle_loop.task import Task
    from spindle_loop.typedefs import Coro

logger = get_logger(__name__)


@dataclass
class _Deadline:
    """Cancels a cancel scope once delay has passed.

    The countdown runs in a background task, which is cancelled again when
    the guarded block ends first.
    """

    """The delay for the timeout."""
    delay: float

    """The scope to cancel."""
    cancel_scope: CancelScope

    """Internal time check."""
    _finished: bool = field(default=False, init=False)

    _watcher: Task | None = field(default=None, init=False, repr=False)

    def _watch(self) -> Coro[None]:
        """Background task that sleeps for delay.

        Cancels the cancel scope if not self._finished after sleep.
        """
        yield from sleep(self.delay)
        if not self._finished:
            logger.debug("Deadline expired", delay=self.delay)
            self.cancel_scope.cancel()

    def start(self) -> None:
        """Starts a background task which checks for timeout."""
        self._finished = False
        loop = get_current_task().loop
        self._watcher = loop.create_task(self._watch(), name="deadline")

    def end(self) -> None:
        """Registers the guarded block as finished, and stops the watcher."""
        self._finished = True
        if self._watcher is not None:
            self._watcher.cancel()
            self._watcher = None


@contextmanager
def move_on_after(delay: float, *, shield: bool = False) -> Generator[CancelScope]:
    """Leaves the block silently once delay has passed.

    Args:
        delay: seconds the block may run for
        shield: whether the block is protected from enclosing cancellations

    Yields:
        The cancel scope guarding the block. ``cancelled_caught`` tells whether
        the deadline cut the block short.
    """
    cancel_scope = CancelScope(shielded=shield)
    deadline = _Deadline(delay=delay, cancel_scope=cancel_scope)
    with cancel_scope:
        deadline.start()
        try:
            yield cancel_scope
        finally:
            deadline.end()


@contextmanager
def fail_after(delay: float, *, shield: bool = False) -> Generator[CancelScope]:
    """Cancels the block and throws Cancelled once delay has passed.

    Args:
        delay: seconds the block may run for
        shield: whether the block is protected from enclosing cancellations

    Raises:
        Cancelled: if the deadline cut the block short.
    """
    with move_on_after(delay, shield=shield) as cancel_scope:
        yield cancel_scope

    if cancel_scope.cancelled_caught:
        msg = f"Block did not finish within {delay} seconds"
        raise Cancelled(msg)
