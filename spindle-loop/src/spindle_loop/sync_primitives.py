from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from spindle_core.log import get_logger
from spindle_loop.lowlevel import checkpoint, get_current_task, unpark
from spindle_loop.operations import Park
from spindle_loop.task import CancelScope

if TYPE_CHECKING:
    from spindle_loop.typedefs import Coro, TaskID

logger = get_logger(__name__)


@dataclass(slots=True, kw_only=True, eq=False)
class Event:
    """Event primitive. Setting it wakes every waiting task."""

    """Whether wait will block or not."""
    ready: bool = field(default=False, init=False)

    """Bumped on every set, so waiters notice a set followed by a clear."""
    _generation: int = field(default=0, init=False, repr=False)

    """Internally used to unpark."""
    _task_ids: list[TaskID] = field(default_factory=list, init=False, repr=False)

    def is_set(self) -> bool:
        """Whether wait returns right away."""
        return self.ready

    def set(self) -> None:
        """Sets the event as ready, and unparks related tasks."""
        if self.ready:
            return
        self.ready = True
        self._generation += 1
        task_ids, self._task_ids = self._task_ids, []
        for task_id in task_ids:
            unpark(task_id)

    def clear(self) -> None:
        """Makes wait block again."""
        self.ready = False

    def wait(self) -> Coro[None]:
        """Parks the executing task until the event is set."""
        if self.ready:
            return

        task_id = get_current_task().task_id
        generation = self._generation
        while self._generation == generation:
            self._task_ids.append(task_id)
            try:
                yield Park()
            finally:
                if task_id in self._task_ids:
                    self._task_ids.remove(task_id)


@dataclass(slots=True, kw_only=True)
class Semaphore:
    """Semaphore primitive. Waiters acquire in FIFO order."""

    """Max number of entries without release allowed."""
    initial_value: int

    """Entries left before acquire blocks."""
    value: int = field(init=False)

    _waiters: deque[Event] = field(default_factory=deque, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.initial_value < 0:
            raise ValueError("Semaphore initial value must be >= 0")
        self.value = self.initial_value

    def acquire(self) -> Coro[None]:
        """Acquires an entry, waiting for a release if there's none left."""
        yield from checkpoint()
        if self.value > 0 and not self._waiters:
            self.value -= 1
            return

        # release hands the entry straight to the waiter by setting its event.
        event = Event()
        self._waiters.append(event)
        try:
            yield from event.wait()
        except BaseException:
            logger.debug("Semaphore acquire interrupted", handed_off=event.is_set())
            if event.is_set():
                self.release()
            else:
                self._waiters.remove(event)
            raise

    def release(self) -> None:
        """Releases an entry for the next task to acquire it."""
        if self._waiters:
            self._waiters.popleft().set()
            return
        if self.value >= self.initial_value:
            raise RuntimeError("Nothing to release")
        self.value += 1

    @property
    def waiting(self) -> int:
        """Number of tasks blocked in acquire."""
        return len(self._waiters)


@dataclass(slots=True, kw_only=True)
class Lock:
    """Lock primitive (classic mutex)."""

    """ID of the task currently holding the lock."""
    owner: TaskID | None = field(default=None, init=False, repr=False)

    _semaphore: Semaphore = field(
        default_factory=lambda: Semaphore(initial_value=1), init=False
    )

    def acquire(self) -> Coro[None]:
        """Attempts to acquire the lock."""
        task_id = get_current_task().task_id
        if self.owner == task_id:
            raise RuntimeError("Lock is not reentrant")
        yield from self._semaphore.acquire()
        self.owner = task_id

    def release(self) -> None:
        """Releases the lock for the next task to acquire it."""
        if not self.owner == get_current_task().task_id:
            raise RuntimeError("Task not owning the lock attempted release")
        self.owner = None
        self._semaphore.release()

    def locked(self) -> bool:
        """Checks if the lock is currently held.

        Stays true while release hands the lock to a waiter that has not run yet.
        """
        return self.owner is not None or self._semaphore.value == 0


@dataclass(slots=True, kw_only=True)
class Condition:
    """Trio style Condition primitive."""

    """The lock object to use internally, a fresh one when None."""
    lock: Lock = field(default_factory=Lock)

    _events: deque[Event] = field(default_factory=deque, init=False)

    def __post_init__(self) -> None:
        if self.lock is None:
            self.lock = Lock()

    def acquire(self) -> Coro[None]:
        """Acquires the underlying lock."""
        yield from self.lock.acquire()

    def notify(self, n: int = 1, /) -> None:
        """Wakes up one or more tasks that are blocked in `wait`."""
        self._check_owner()
        for _ in range(min(n, len(self._events))):
            event = self._events.popleft()
            event.set()

    def notify_all(self) -> None:
        """Wakes up all tasks that are blocked in `wait`."""
        self.notify(len(self._events))

    def release(self) -> None:
        """Releases the underlying lock."""
        self.lock.release()

    def wait(self) -> Coro[None]:
        """Waits for a respective `notify` call, then reacquires the lock."""
        self._check_owner()
        self.lock.release()
        event = Event()
        self._events.append(event)
        try:
            yield from event.wait()
        finally:
            if event in self._events:
                self._events.remove(event)
            # The caller owns the lock again even when the wait is cancelled.
            with CancelScope(shielded=True):
                yield from self.lock.acquire()

    def _check_owner(self) -> None:
        if not self.lock.owner == get_current_task().task_id:
            raise RuntimeError("Calling task does not hold condition lock")
