from __future__ import annotations

import errno
import heapq
import os
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Self

from spindle_core.clock import MonotonicClock
from spindle_core.log import get_logger
from spindle_core.operations import Cancel
from spindle_core.results import CancelResult, Completion

if TYPE_CHECKING:
    from types import TracebackType

    from spindle_core.clock import Clock
    from spindle_core.operations import TimerOperation
    from spindle_core.results import TimerResult
    from spindle_core.typedefs import WorkerOperationID

logger = get_logger(__name__)


@dataclass(slots=True)
class _Submission:
    """An operation sitting in the timer heap."""

    operation: TimerOperation
    deadline: float


class TimerWorker:
    """Submission and completion queues over a heap of deadlines.

    Operations are staged with ``register`` and only become active on
    ``submit``. Completions are collected with ``peek`` (non-blocking) or
    ``wait`` (sleeps on the clock until the earliest deadline).
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock: Clock = clock if clock is not None else MonotonicClock()

        # Registered but not yet submitted.
        self._staged: list[tuple[TimerOperation, WorkerOperationID]] = []

        # Maps user_data to the respective in-flight operation.
        self._active_submissions: dict[WorkerOperationID, _Submission] = {}

        # (deadline, sequence, user_data). Cancelled entries are left in place
        # and skipped when they surface.
        self._heap: list[tuple[float, int, WorkerOperationID]] = []
        self._sequence = 0

        # Completions that don't depend on the clock, like cancellations.
        self._ready: deque[Completion[TimerResult]] = deque()

        self._closed = False

    def __enter__(self) -> Self:
        self._check_open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def clock(self) -> Clock:
        """The clock deadlines are measured against."""
        return self._clock

    @property
    def pending(self) -> bool:
        """Whether any submitted operation has yet to be collected."""
        return bool(self._ready) or bool(self._active_submissions)

    def register(
        self, operation: TimerOperation, user_data: WorkerOperationID
    ) -> WorkerOperationID:
        """Stages an operation for the next submit."""
        self._check_open()
        if user_data in self._active_submissions or any(
            staged_id == user_data for _, staged_id in self._staged
        ):
            msg = f"Operation id {user_data} is already in use"
            raise ValueError(msg)

        self._staged.append((operation, user_data))
        return user_data

    def submit(self) -> int:
        """Activates every staged operation.

        Returns:
            The number of operations submitted.
        """
        self._check_open()
        now = self._clock.monotonic()
        submitted = len(self._staged)

        for operation, user_data in self._staged:
            match operation:
                case Cancel(target_identifier=target):
                    self._cancel(target, user_data)
                case _:
                    deadline = operation.deadline(now)
                    self._active_submissions[user_data] = _Submission(
                        operation=operation, deadline=deadline
                    )
                    heapq.heappush(self._heap, (deadline, self._sequence, user_data))
                    self._sequence += 1

        self._staged.clear()
        return submitted

    def peek(self) -> Completion[TimerResult] | None:
        """Nonblocking check if a completion is available.

        Returns:
            Completion if available, otherwise None.
        """
        self._check_open()
        if self._ready:
            return self._ready.popleft()

        top = self._next_live_entry()
        if top is None:
            return None

        now = self._clock.monotonic()
        deadline, _, _ = top
        if deadline > now:
            return None

        return self._pop_expired(now)

    def wait(self) -> Completion[TimerResult]:
        """Blocks until a completion is available.

        Raises:
            RuntimeError: if nothing has been submitted, so nothing could ever
                complete.
        """
        self._check_open()
        if self._ready:
            return self._ready.popleft()

        top = self._next_live_entry()
        if top is None:
            raise RuntimeError("Waiting on a worker with no pending operations")

        deadline, _, _ = top
        delay = deadline - self._clock.monotonic()
        if delay > 0:
            self._clock.sleep(delay)

        return self._pop_expired(self._clock.monotonic())

    def close(self) -> None:
        """Drops all pending state. The worker can't be used afterwards."""
        if self._closed:
            return
        if self._active_submissions:
            logger.debug(
                "Closing timer worker with pending operations",
                pending=len(self._active_submissions),
            )
        self._staged.clear()
        self._active_submissions.clear()
        self._heap.clear()
        self._ready.clear()
        self._closed = True

    def _cancel(self, target: WorkerOperationID, user_data: WorkerOperationID) -> None:
        """Completes target with ECANCELED, if it's still in flight."""
        submission = self._active_submissions.pop(target, None)
        if submission is not None:
            self._ready.append(
                Completion(
                    user_data=target,
                    result=OSError(errno.ECANCELED, os.strerror(errno.ECANCELED)),
                )
            )
        self._ready.append(
            Completion(
                user_data=user_data,
                result=CancelResult(found=submission is not None),
            )
        )

    def _next_live_entry(self) -> tuple[float, int, WorkerOperationID] | None:
        """Discards cancelled heap entries and returns the earliest live one."""
        while self._heap:
            entry = self._heap[0]
            if entry[2] in self._active_submissions:
                return entry
            heapq.heappop(self._heap)
        return None

    def _pop_expired(self, now: float) -> Completion[TimerResult]:
        _, _, user_data = heapq.heappop(self._heap)
        submission = self._active_submissions.pop(user_data)
        result = submission.operation.extract(submission.deadline, now)
        return Completion(user_data=user_data, result=result)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Timer worker is closed")
