from __future__ import annotations

import errno
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

from spindle_core.clock import MonotonicClock
from spindle_core.config import get_settings
from spindle_core.log import get_logger
from spindle_core.operations import Cancel, TimerOperation
from spindle_core.worker import TimerWorker
from spindle_loop._utils import _local
from spindle_loop.exceptions import Cancelled, DeadlockError, LoopClosedError
from spindle_loop.operations import Checkpoint, Park, WaitsOn
from spindle_loop.task import _create_task

if TYPE_CHECKING:
    from collections.abc import Generator

    from spindle_core.clock import Clock
    from spindle_core.config import Settings
    from spindle_core.results import Completion, TimerResult
    from spindle_loop.task import Task
    from spindle_loop.typedefs import Coro, TaskID

logger = get_logger(__name__)


class LoopState(Enum):
    """Lifecycle of a loop. Closed is terminal."""

    UNINITIALIZED = auto()
    RUNNING = auto()
    CLOSED = auto()


@dataclass(slots=True, kw_only=True)
class Loop:
    """The spindle loop.

    Single threaded and cooperative: a task runs until it yields an operation,
    and the loop resumes it once that operation is satisfied.
    """

    """Time source for sleeps."""
    clock: Clock = field(default_factory=MonotonicClock)

    """Diagnostics configuration."""
    settings: Settings = field(default_factory=get_settings)

    """The tasks not yet finished."""
    tasks: dict[TaskID, Task] = field(default_factory=dict, init=False)

    """Says which other tasks depends on a given task."""
    task_dependencies: defaultdict[TaskID, set[TaskID]] = field(
        default_factory=lambda: defaultdict(set), init=False
    )

    """Maps operation id to task id for in-flight operations"""
    operation_to_task: dict[int, TaskID] = field(default_factory=dict, init=False)

    """Tasks whose cancel scopes were cancelled since the last pass."""
    cancel_queue: deque[TaskID] = field(default_factory=deque, init=False)

    """Tasks unparked since the last pass."""
    unpark_queue: deque[TaskID] = field(default_factory=deque, init=False)

    state: LoopState = field(default=LoopState.UNINITIALIZED, init=False)

    """The task which is currently executing synchronously"""
    _current_task: Task | None = field(default=None, init=False)

    _worker: TimerWorker | None = field(default=None, init=False, repr=False)

    """Shared by tasks and worker operations."""
    _free_id: int = field(default=1, init=False, repr=False)

    """Set while a run_until_complete or close call is driving tasks."""
    _driving: bool = field(default=False, init=False)

    """Failed tasks removed before anyone looked at their exception."""
    _unobserved: list[Task] = field(default_factory=list, init=False, repr=False)

    @property
    def is_closed(self) -> bool:
        """If the loop has been closed."""
        return self.state is LoopState.CLOSED

    @property
    def is_running(self) -> bool:
        """If the loop is currently driving tasks."""
        return self._driving

    def time(self) -> float:
        """The loop's clock time."""
        return self.clock.monotonic()

    def new_id(self) -> int:
        """Gets an unused ID for a task or a worker operation."""
        ret = self._free_id
        self._free_id += 1
        return ret

    def create_task[T](self, gen: Coro[T], *, name: str | None = None) -> Task[T]:
        """Schedules a coroutine as a new task.

        Nothing of the coroutine runs until the loop's next scheduling pass.
        """
        self._check_not_closed()
        return _create_task(self, gen, cancel_scopes=None, task_group=None, name=name)

    def add_task(self, task: Task) -> None:
        """Adds a task to be run by the event loop."""
        self._check_not_closed()
        self.tasks[task.task_id] = task
        logger.debug("Task scheduled", task_id=task.task_id, name=task.name)

    def request_cancel(self, *task_ids: TaskID) -> None:
        """Queues cancellation of the given tasks for the next pass."""
        self.cancel_queue.extend(task_ids)

    def run_until_complete[T](self, gen: Coro[T]) -> T:
        """Runs the loop until the given coroutine finishes.

        Other tasks still pending when it finishes stay scheduled, and continue
        on the next call, or are cancelled on close.

        Returns:
            The coroutine's return value.

        Raises:
            LoopClosedError: if the loop has been closed.
            DeadlockError: if no task can make progress.
            BaseException: whatever the coroutine failed with.
        """
        self._check_not_closed()
        if self._driving:
            raise RuntimeError("This loop is already running")
        if _local.loop is not None:
            raise RuntimeError("Another loop is already running in this thread")

        entry = self.create_task(gen, name="entry")
        with self._driven():
            while not entry.is_done:
                self._run_once()

        return entry.result

    def close(self) -> None:
        """Cancels remaining tasks, reports unobserved failures, and releases the worker.

        Closing an already closed loop does nothing.
        """
        if self.state is LoopState.CLOSED:
            return
        if self._driving:
            raise RuntimeError("Cannot close a running loop")

        try:
            if self.tasks:
                with self._driven():
                    self._shutdown_tasks()
        finally:
            self._report_unobserved()
            if self._worker is not None:
                self._worker.close()
                self._worker = None
            self.state = LoopState.CLOSED
            logger.debug("Loop closed")

    def _run_once(self) -> None:
        """One scheduling pass."""
        worker = self._get_worker()
        self._handle_cancellations(worker)
        self._start_tasks()
        self._register_tasks(worker)
        self._drive_unparked_tasks()
        self._drive_completed_tasks(worker)
        self._drive_checkpointed_tasks()
        self._remove_done_tasks()

    def _shutdown_tasks(self) -> None:
        """Cancels every remaining task and drives them until they finish."""
        logger.debug("Cancelling remaining tasks", count=len(self.tasks))
        for task in list(self.tasks.values()):
            task.cancel()

        while self.tasks:
            self._run_once()

    def _handle_cancellations(self, worker: TimerWorker) -> None:
        """Drains cancellation queue and registers and submits cancellations events."""
        should_submit = False
        while self.cancel_queue:
            task_id = self.cancel_queue.popleft()
            task = self.tasks.get(task_id)
            if task is None or task.is_done or not task.should_cancel():
                continue

            match task.operation:
                case WaitsOn(cancellable=False):
                    continue
                case WaitsOn() | Park() if task.is_submitted:
                    # No timer involved, throw directly
                    self._throw(task, Cancelled(f"Task {task.task_id} was cancelled"))
                case TimerOperation() if (op_id := task.pending_op_id) is not None:
                    cancel_op = Cancel(target_identifier=op_id)
                    worker.register(cancel_op, self.new_id())
                    should_submit = True
                case _:
                    # Created and ready tasks get thrown into when they're
                    # started or registered.
                    continue

        if should_submit:
            worker.submit()

    def _start_tasks(self) -> None:
        """Starts unstarted tasks."""
        unstarted_tasks = [task for task in self.tasks.values() if not task.is_started]
        for task in unstarted_tasks:
            if task.should_cancel():
                self._throw(task, Cancelled(f"Task {task.task_id} was cancelled"))
            else:
                with self.set_current_task(task):
                    task.start()

    def _register_tasks(self, worker: TimerWorker) -> None:
        tasks_to_register = [task for task in self.tasks.values() if task.is_ready]
        should_submit = False

        for task in tasks_to_register:
            operation = task.operation
            if task.should_cancel() and not (
                isinstance(operation, WaitsOn) and not operation.cancellable
            ):
                # The task is cancelled, and has no timer in progress. Whatever
                # it yields next is registered on the next pass.
                self._throw(task, Cancelled(f"Task {task.task_id} was cancelled"))
                continue

            match operation:
                case TimerOperation():
                    op_id = self.new_id()
                    worker.register(operation, op_id)
                    self.operation_to_task[op_id] = task.task_id
                    task.submit(op_id)
                    should_submit = True
                case WaitsOn(task_ids=task_ids):
                    pending = [
                        task_id
                        for task_id in task_ids
                        if (dependency := self.tasks.get(task_id)) is not None
                        and not dependency.is_done
                    ]
                    if not pending:
                        # Everything finished between the yield and now.
                        task.reschedule()
                        continue
                    for task_id in pending:
                        self.task_dependencies[task_id].add(task.task_id)
                    task.submit()
                case Park():
                    task.submit()
                case Checkpoint():
                    continue
                case _:
                    msg = f"Task yielded an unsupported operation: {operation!r}"
                    self._throw(task, TypeError(msg))

        if should_submit:
            worker.submit()

    def _all_tasks_blocked(self) -> bool:
        """If nothing can progress without a timer firing."""
        return (
            bool(self.tasks)
            and not self.unpark_queue
            and not self.cancel_queue
            and all(task.is_submitted for task in self.tasks.values())
        )

    def _get_completed_operations(
        self, worker: TimerWorker
    ) -> list[Completion[TimerResult]]:
        completions: list[Completion[TimerResult]] = []

        if self._all_tasks_blocked():
            if not worker.pending:
                logger.error("Raising Deadlock error", tasks=list(self.tasks.values()))
                raise DeadlockError(
                    "Deadlock: all tasks waiting on dependencies, no pending timers"
                )
            completions.append(worker.wait())

        # Peek until we get None.
        while (completion := worker.peek()) is not None:
            completions.append(completion)

        return completions

    def _drive_completed_tasks(self, worker: TimerWorker) -> None:
        completions = self._get_completed_operations(worker)
        for completion in completions:
            op_id = completion.user_data
            task_id = self.operation_to_task.pop(op_id, None)

            if task_id is None:
                continue
            task = self.tasks.get(task_id)
            if task is None or task.pending_op_id != op_id:
                continue

            if (
                isinstance(oserror := completion.result, OSError)
                and oserror.errno == errno.ECANCELED
            ):
                self._throw(task, Cancelled(f"Task {task.task_id} was cancelled"))
            else:
                self._drive(task, completion)

    def _drive_unparked_tasks(self) -> None:
        """Drives tasks that have been unparked.

        Needs to run before _drive_completed_tasks to avoid deadlocks.
        """
        while self.unpark_queue:
            unparked_task = self.tasks.get(self.unpark_queue.popleft())
            if unparked_task is None or not unparked_task.is_parked:
                continue

            self._drive(unparked_task, None)

    def _drive_checkpointed_tasks(self) -> None:
        """Drives tasks that have been checkpointed."""
        checkpointed_tasks = [
            task for task in self.tasks.values() if task.is_checkpointed
        ]

        for task in checkpointed_tasks:
            self._drive(task, None)

    def _remove_done_tasks(self) -> None:
        """Removes finished tasks, and drives the tasks that waited on them.

        Repeats until no finished task is left, since a woken waiter can
        finish too.
        """
        while done_tasks := [task for task in self.tasks.values() if task.is_done]:
            for done_task in done_tasks:
                for waiting_task_id in self.task_dependencies.pop(
                    done_task.task_id, set()
                ):
                    waiting_task = self.tasks.get(waiting_task_id)
                    if waiting_task is None or not waiting_task.waits_on(
                        done_task.task_id
                    ):
                        # The loop has already driven this forward, for example
                        # if all tasks it depended on finished in the same pass.
                        continue
                    self._drive(waiting_task, None)

                if done_task.has_unobserved_error:
                    self._unobserved.append(done_task)
                del self.tasks[done_task.task_id]

    def _report_unobserved(self) -> None:
        for task in self._unobserved:
            if not task.has_unobserved_error:
                continue
            logger.error(
                "Task exception was never retrieved",
                task_id=task.task_id,
                name=task.name,
                exc_info=task.exception(),
            )
        self._unobserved.clear()

    def _drive(self, task: Task, value: Completion[TimerResult] | None) -> None:
        with self.set_current_task(task):
            task.drive(value)

    def _throw(self, task: Task, exc: BaseException) -> None:
        with self.set_current_task(task):
            task.throw(exc)

    def _get_worker(self) -> TimerWorker:
        if self._worker is None:
            raise RuntimeError("Loop has not been started")
        return self._worker

    def _check_not_closed(self) -> None:
        if self.state is LoopState.CLOSED:
            raise LoopClosedError("Event loop is closed")

    @contextmanager
    def _driven(self) -> Generator[None]:
        """Marks the loop as driving tasks, starting it on first use."""
        if _local.loop is not None:
            raise RuntimeError("Another loop is already running in this thread")

        if self.state is LoopState.UNINITIALIZED:
            self._worker = TimerWorker(self.clock)
            self.state = LoopState.RUNNING
            logger.debug("Loop started", clock=repr(self.clock))

        _local.loop = self
        self._driving = True
        try:
            yield
        finally:
            self._driving = False
            _local.loop = None

    @property
    def current_task(self) -> Task:
        """Gets currently executing task."""
        if self._current_task is None:
            raise RuntimeError("No task currently executing")

        return self._current_task

    @contextmanager
    def set_current_task(self, task: Task) -> Generator[None]:
        """Utility wrapper for setting and removing currently executing task.

        In debug mode, steps running longer than the configured threshold are
        logged.
        """
        self._current_task = task
        started = self.clock.monotonic()
        try:
            yield
        finally:
            self._current_task = None
            if self.settings.debug:
                elapsed = self.clock.monotonic() - started
                if elapsed > self.settings.slow_step_threshold:
                    logger.warning(
                        "Slow task step",
                        task_id=task.task_id,
                        name=task.name,
                        duration=round(elapsed, 4),
                    )


def run[T](
    gen: Coro[T], *, clock: Clock | None = None, settings: Settings | None = None
) -> T:
    """Entry point for running the event loop.

    Creates a Task from the generator on a fresh loop, runs the loop until it
    finishes, and closes the loop.

    Args:
        gen: the entry coroutine
        clock: time source, real time by default
        settings: diagnostics configuration, from the environment by default

    Returns:
        The entry coroutine's return value.
    """
    loop = Loop(
        clock=clock if clock is not None else MonotonicClock(),
        settings=settings if settings is not None else get_settings(),
    )
    try:
        return loop.run_until_complete(gen)
    finally:
        loop.close()
