from __future__ import annotations

from collections import deque
from collections.abc import Coroutine, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Self, cast, overload

from spindle_core.log import get_logger
from spindle_loop.exceptions import Cancelled, InvalidStateError
from spindle_loop.lowlevel import get_current_task, get_running_loop
from spindle_loop.operations import Checkpoint, Park, WaitsOn
from spindle_loop.task.state import Created, Done, Ready, Submitted, TaskState

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from types import TracebackType

    from spindle_core.results import Completion, TimerResult
    from spindle_loop.loop import Loop
    from spindle_loop.typedefs import Coro, EventLoopOperation, TaskID

logger = get_logger(__name__)


@dataclass(slots=True, kw_only=True, eq=False)
class CancelScope:
    """Cancel scope, inspired by Trio.

    Every task inside a cancelled scope gets Cancelled thrown in at its current
    or next suspension point, and again at every suspension point after that
    until it leaves the scope. A shielded scope hides the cancellation of the
    scopes enclosing it.
    """

    """If the scope is shielded from cancellation or not."""
    shielded: bool = field(default=False)

    """Whether the cancel scope is cancelled or not"""
    cancelled: bool = field(default=False, init=False)

    """Whether the scope absorbed the Cancelled it caused on exit."""
    cancelled_caught: bool = field(default=False, init=False)

    """IDs of the tasks within the cancel scope."""
    task_ids: set[TaskID] = field(default_factory=set, init=False)

    def cancel(self, loop: Loop | None = None) -> None:
        """Cancels the cancel scope."""
        if self.cancelled:
            return
        self.cancelled = True
        loop = loop if loop is not None else get_running_loop()
        loop.request_cancel(*self.task_ids)

    def __enter__(self) -> Self:
        """Adds the current task to the scope."""
        get_current_task().enter_cancel_scope(self)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        """Removes the current task from the scope.

        Swallows a Cancelled this scope caused, unless an enclosing scope is
        cancelled too, in which case it keeps propagating.
        """
        task = get_current_task()
        task.exit_cancel_scope(self)
        if (
            isinstance(exc_val, Cancelled)
            and self.cancelled
            and not task.should_cancel()
        ):
            self.cancelled_caught = True
            return True
        return False

    def add_task(self, task_id: TaskID) -> None:
        """Adds a task to the cancel scope."""
        self.task_ids.add(task_id)

    def remove_task(self, task_id: TaskID) -> None:
        """Removes a task from the cancel scope."""
        self.task_ids.discard(task_id)


@dataclass(slots=True, kw_only=True, eq=False)
class Task[TResult]:
    """Drives coroutines forwards."""

    """The generator coroutine wrapped by the task."""
    gen: Coro[TResult] = field(repr=False)

    """The ID of the task."""
    task_id: TaskID

    """Optional human readable name, used in logs."""
    name: str | None = None

    """The loop driving the task."""
    loop: Loop = field(repr=False)

    """Cancel scope stack for the task"""
    cancel_scopes: deque[CancelScope] = field(repr=False)

    """The scope created with the task, cancelled by Task.cancel."""
    own_scope: CancelScope = field(repr=False)

    """For the task to know where it lives."""
    task_group: TaskGroup | None = field(default=None, repr=False)

    """Union encompassing the current state of the task"""
    state: TaskState[TResult] = field(default_factory=Created)

    """Whether anyone looked at the outcome of the task."""
    _retrieved: bool = field(default=False, init=False, repr=False)

    def start(self) -> None:
        """Starts the task."""
        if not isinstance(self.state, Created):
            msg = f"Task with task_id {self.task_id} has already been started"
            raise RuntimeError(msg)  # noqa: TRY004

        self.drive(None)

    def drive(self, value: Completion[TimerResult] | None) -> None:
        """Drives the attached generator coroutine forwards."""
        with self._handle_drive_exc():
            op = self.gen.send(value)
            self.state = Ready(operation=op)

    def throw(self, exc: BaseException) -> None:
        """Throws an exception into the task's generator."""
        with self._handle_drive_exc():
            op = self.gen.throw(exc)
            self.state = Ready(operation=op)

    def submit(self, op_id: int | None = None) -> None:
        """Marks the ready operation as processed by the loop."""
        if not isinstance(self.state, Ready):
            msg = f"Task with task_id {self.task_id} has no operation to submit"
            raise RuntimeError(msg)  # noqa: TRY004
        self.state = Submitted(self.state.operation, op_id)

    def reschedule(self) -> None:
        """Turns the current wait into a checkpoint, to be resumed right away."""
        self.state = Ready(operation=Checkpoint())

    @property
    def operation(self) -> EventLoopOperation | None:
        """The operation the task is currently suspended on, if any."""
        if isinstance(self.state, Ready | Submitted):
            return self.state.operation
        return None

    @property
    def pending_op_id(self) -> int | None:
        """Returns the worker op_id the task waits on, or None if not applicable."""
        if not isinstance(self.state, Submitted):
            return None
        return self.state.op_id

    @property
    def is_started(self) -> bool:
        """Checks if a task has been started."""
        return not isinstance(self.state, Created)

    @property
    def is_checkpointed(self) -> bool:
        """Checks if a task is currently checkpointed."""
        return isinstance(self.state, Ready) and isinstance(
            self.state.operation, Checkpoint
        )

    @property
    def is_parked(self) -> bool:
        """If the task is currently parked, or about to be."""
        return isinstance(self.state, Ready | Submitted) and isinstance(
            self.state.operation, Park
        )

    @property
    def is_waiting_on(self) -> bool:
        """If the task is currently waiting on other task dependencies."""
        return isinstance(self.state, Submitted) and isinstance(
            self.state.operation, WaitsOn
        )

    def waits_on(self, task_id: TaskID) -> bool:
        """If the task is currently waiting on the given task."""
        return (
            isinstance(self.state, Submitted)
            and isinstance(self.state.operation, WaitsOn)
            and task_id in self.state.operation.task_ids
        )

    @property
    def has_pending_timer(self) -> bool:
        """Checks if the task is currently waiting on a timer from the worker."""
        return isinstance(self.state, Submitted) and self.state.op_id is not None

    @property
    def is_ready(self) -> bool:
        """If a task is ready to be processed."""
        return isinstance(self.state, Ready)

    @property
    def is_submitted(self) -> bool:
        """If a task has had its operation submitted."""
        return isinstance(self.state, Submitted)

    @property
    def is_done(self) -> bool:
        """If a task has finished."""
        return isinstance(self.state, Done)

    @property
    def is_cancelled(self) -> bool:
        """If a task finished by being cancelled."""
        return isinstance(self.state, Done) and isinstance(self.state.error, Cancelled)

    @property
    def has_unobserved_error(self) -> bool:
        """If a task failed and nobody has looked at the failure yet."""
        return (
            isinstance(self.state, Done)
            and self.state.error is not None
            and not isinstance(self.state.error, Cancelled)
            and not self._retrieved
        )

    @property
    def result(self) -> TResult:
        """Gets the result of a finished task.

        Raises:
            InvalidStateError: if the task hasn't finished.
            BaseException: whatever the task failed with.
        """
        if not isinstance(self.state, Done):
            raise InvalidStateError("Task result access before task was finished")  # noqa: TRY004
        self._retrieved = True
        if self.state.error is not None:
            raise self.state.error

        return cast("TResult", self.state.result)

    def exception(self) -> BaseException | None:
        """Gets the exception a finished task failed with, without raising it."""
        if not isinstance(self.state, Done):
            raise InvalidStateError("Task exception access before task was finished")  # noqa: TRY004
        self._retrieved = True
        return self.state.error

    def wait(self) -> Coro[TResult]:
        """Waits on a Task, so that another Task can yield from it."""
        yield from wait_on(self)
        return self.result

    def cancel(self) -> bool:
        """Requests cancellation of the task.

        Returns:
            False if the task had already finished, True otherwise.
        """
        if self.is_done:
            return False
        logger.debug("Task cancellation requested", task_id=self.task_id)
        self.own_scope.cancel(self.loop)
        return True

    def enter_cancel_scope(self, cancel_scope: CancelScope) -> None:
        """Enters a cancel scope by appending it to the cancel scope stack."""
        self.cancel_scopes.append(cancel_scope)
        cancel_scope.add_task(self.task_id)

    def exit_cancel_scope(self, cancel_scope: CancelScope | None = None) -> CancelScope:
        """Exits a cancel scope by removing it from the cancel scope stack.

        Without an argument the innermost scope is exited.
        """
        if cancel_scope is None or self.cancel_scopes[-1] is cancel_scope:
            cancel_scope = self.cancel_scopes.pop()
        else:
            self.cancel_scopes.remove(cancel_scope)
        cancel_scope.remove_task(self.task_id)
        return cancel_scope

    def current_cancel_scope(self) -> CancelScope:
        """Gets the lowest level nested cancel scope."""
        if not self.cancel_scopes:
            raise RuntimeError("Task created without cancel scope")

        return self.cancel_scopes[-1]

    def should_cancel(self) -> bool:
        """Determines if a task should be cancelled from its cancel scopes."""
        for cancel_scope in reversed(self.cancel_scopes):
            if cancel_scope.cancelled:
                return True
            if cancel_scope.shielded:
                return False

        return False

    def set_error(self, exc: BaseException) -> None:
        """Sets the result of the task to an exception."""
        self.state = Done(error=exc)

    def mark_retrieved(self) -> None:
        """Records that the outcome of the task has been observed."""
        self._retrieved = True

    @contextmanager
    def _handle_drive_exc(self) -> Generator[None]:
        try:
            yield
        except StopIteration as e:
            self.state = Done(result=e.value)
            logger.debug("Task finished", task_id=self.task_id, name=self.name)
        except (KeyboardInterrupt, SystemExit) as e:
            self.set_error(e)
            raise
        except BaseException as e:
            self.set_error(e)
            logger.debug(
                "Task failed",
                task_id=self.task_id,
                name=self.name,
                error=type(e).__name__,
            )
            if self.task_group is not None:
                self.task_group.set_error(self, e)


@dataclass(slots=True, kw_only=True, eq=False)
class TaskGroup:
    """Trio style nursery.

    Lots of boiler-plate due to not being compatible with CM protocol: the
    owning task calls enter, and yields from exit when leaving the block.
    open_task_group wraps the whole dance.
    """

    """All the tasks started within the group."""
    tasks: list[Task] = field(default_factory=list, init=False)

    """Common cancel scope for all tasks in the group."""
    cancel_scope: CancelScope = field(default_factory=CancelScope, init=False)

    """List of errors produced by children."""
    _errors: list[BaseException] = field(default_factory=list, init=False)

    """Set once the owning task left the group."""
    _exited: bool = field(default=False, init=False)

    def create_task[T](self, gen: Coro[T], *, name: str | None = None) -> Task[T]:
        """Creates a task managed by the task group.

        The child inherits the cancel scopes of the owning task, up to and
        including the group's own scope.
        """
        if self._exited:
            raise RuntimeError("Task group has already exited")

        parent = get_current_task()
        inherited: list[CancelScope] = []
        for cancel_scope in parent.cancel_scopes:
            inherited.append(cancel_scope)
            if cancel_scope is self.cancel_scope:
                break
        else:
            raise RuntimeError("Task group used outside of its block")

        task = _create_task(
            parent.loop, gen, cancel_scopes=inherited, task_group=self, name=name
        )
        self.tasks.append(task)
        return task

    def enter(self) -> None:
        """Enters the group's scope, like CancelScope.__enter__."""
        get_current_task().enter_cancel_scope(self.cancel_scope)

    def exit(self, exc: BaseException | None = None) -> Coro[bool]:
        """Waits for all children, then reports their failures.

        Args:
            exc: the exception the block is exiting with, if any. Unfinished
                children are cancelled when it's given.

        Returns:
            Whether exc was a Cancelled this group's scope caused and has
            absorbed, in which case the caller must not re-raise it.

        Raises:
            BaseExceptionGroup: of the children's failures. Cancellations are
                not failures.
        """
        # Like CancelScope.__exit__, but waits for the children.
        current = get_current_task()
        current.exit_cancel_scope(self.cancel_scope)
        self._exited = True

        if exc is not None and not all(task.is_done for task in self.tasks):
            self.cancel_scope.cancel()

        while not all(task.is_done for task in self.tasks):
            yield from wait_on(*self.tasks, cancellable=False)

        if self._errors:
            errors = list(self._errors)
            if exc is not None and not isinstance(exc, Cancelled):
                errors.insert(0, exc)
            raise BaseExceptionGroup("unhandled errors in TaskGroup", errors) from None

        if (
            isinstance(exc, Cancelled)
            and self.cancel_scope.cancelled
            and not current.should_cancel()
        ):
            self.cancel_scope.cancelled_caught = True
            return True
        return False

    def wait(self) -> Coro[None]:
        """Waits for all children to finish."""
        while not all(task.is_done for task in self.tasks):
            yield from wait_on(*self.tasks)

    def set_error(self, task: Task, exc: BaseException) -> None:
        """Tells the task group that a child failed."""
        if isinstance(exc, Cancelled):
            return

        task.mark_retrieved()
        self._errors.append(exc)
        self.cancel_scope.cancel(task.loop)


def open_task_group[T](body: Callable[[TaskGroup], Coro[T]]) -> Coro[T | None]:
    """Runs body inside a fresh task group and exits the group properly.

    Args:
        body: a function taking the group and returning the coroutine to run
            inside it

    Returns:
        Final return value when yielded from will be the body's return value,
        or None when cancelling the group's own scope cut the body short
    """
    task_group = TaskGroup()
    task_group.enter()
    try:
        result = yield from body(task_group)
    except BaseException as exc:
        if not (yield from task_group.exit(exc)):
            raise
        return None
    yield from task_group.exit()
    return result


def wait_on(*tasks: Task, cancellable: bool = True) -> Coro[None]:
    """Yield until all given tasks are done.

    Args:
        tasks: the tasks for which we want to wait for
        cancellable: whether cancellation may interrupt the wait
    """
    current = get_current_task()
    for task in tasks:
        if task is current:
            raise RuntimeError("A task cannot wait on itself")
        if task.loop is not current.loop:
            raise RuntimeError("Cannot wait on a task from another loop")

    while not all(task.is_done for task in tasks):
        unfinished = tuple(task.task_id for task in tasks if not task.is_done)
        yield WaitsOn(task_ids=unfinished, cancellable=cancellable)


def create_task[T](gen: Coro[T], *, name: str | None = None) -> Task[T]:
    """Schedules a coroutine on the running loop.

    Returns right away. None of the coroutine runs until the loop's next
    scheduling pass.

    Args:
        gen: the coroutine for the Task to wrap
        name: optional name, used in logs
    """
    return get_running_loop().create_task(gen, name=name)


def _create_task[T](
    loop: Loop,
    gen: Coro[T],
    *,
    cancel_scopes: Iterable[CancelScope] | None,
    task_group: TaskGroup | None,
    name: str | None,
) -> Task[T]:
    """Creates a task by adding it to the event loop.

    Args:
        loop: the loop to schedule the task on
        gen: the coroutine for the Task to wrap
        cancel_scopes: the cancel scopes inherited by the task
        task_group: the task group to which the task belongs to
        name: optional name, used in logs
    """
    if not isinstance(gen, Generator | Coroutine):
        msg = f"Expected a generator coroutine, got {type(gen).__name__}"
        raise TypeError(msg)

    own_scope = CancelScope()
    _cancel_scopes = deque(cancel_scopes or ())
    _cancel_scopes.append(own_scope)

    task: Task[T] = Task(
        gen=gen,
        task_id=loop.new_id(),
        name=name,
        loop=loop,
        cancel_scopes=_cancel_scopes,
        own_scope=own_scope,
        task_group=task_group,
    )
    for cancel_scope in _cancel_scopes:
        cancel_scope.add_task(task.task_id)

    loop.add_task(task)
    return task


# Yes, this is stupid. But Python doesn't have "Map" for VarTypeTyple yet.
# This is what asyncio does for gather.


@overload
def gather[T1](task1: Task[T1], /) -> Coro[tuple[T1]]: ...


@overload
def gather[T1, T2](task1: Task[T1], task2: Task[T2], /) -> Coro[tuple[T1, T2]]: ...


@overload
def gather[T1, T2, T3](
    task1: Task[T1], task2: Task[T2], task3: Task[T3], /
) -> Coro[tuple[T1, T2, T3]]: ...


@overload
def gather[T1, T2, T3, T4](
    task1: Task[T1], task2: Task[T2], task3: Task[T3], task4: Task[T4], /
) -> Coro[tuple[T1, T2, T3, T4]]: ...


@overload
def gather[T1, T2, T3, T4, T5](
    task1: Task[T1],
    task2: Task[T2],
    task3: Task[T3],
    task4: Task[T4],
    task5: Task[T5],
    /,
) -> Coro[tuple[T1, T2, T3, T4, T5]]: ...


@overload
def gather[T1, T2, T3, T4, T5, T6](
    task1: Task[T1],
    task2: Task[T2],
    task3: Task[T3],
    task4: Task[T4],
    task5: Task[T5],
    task6: Task[T6],
    /,
) -> Coro[tuple[T1, T2, T3, T4, T5, T6]]: ...


def gather[T](*tasks: Task[T]) -> Coro[tuple[T, ...]]:
    """Wrapper to await multiple tasks.

    Completes once every task has finished. Failed tasks don't cut the wait
    short, and siblings are not cancelled.

    Args:
        tasks: the task you want to yield from (await)

    Returns:
        Final return value when yielded from will be a tuple of task results

    Raises:
        The first failure among tasks, in argument order.
    """
    yield from wait_on(*tasks)
    return tuple(task.result for task in tasks)
