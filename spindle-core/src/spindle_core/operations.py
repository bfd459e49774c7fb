"""Timer operations understood by the TimerWorker."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, override

from spindle_core.results import CancelResult, SleepResult

if TYPE_CHECKING:
    from spindle_core.results import TimerResult
    from spindle_core.typedefs import WorkerOperationID


class TimerOperation[T: TimerResult](ABC):
    """Base class for all timer operations."""

    result_type: type[T]

    @abstractmethod
    def deadline(self, now: float) -> float:
        """Computes the clock time at which the operation completes."""

    @abstractmethod
    def extract(self, deadline: float, fired_at: float) -> T:
        """Wraps a fired deadline in the correct result type."""


@dataclass
class Cancel(TimerOperation[CancelResult]):
    """Cancels an in-flight operation.

    The worker completes the target straight away with ECANCELED.
    """

    result_type = CancelResult

    """The id of the operation to cancel"""
    target_identifier: WorkerOperationID

    @override
    def deadline(self, now: float) -> float:
        """Cancellations are processed on submit."""
        return now

    @override
    def extract(self, deadline: float, fired_at: float) -> CancelResult:
        """Never called: the worker completes cancellations on submit.

        Raises:
            RuntimeError: always, a Cancel never enters the timer heap.
        """
        raise RuntimeError("Cancel operations complete on submit and never fire")


@dataclass
class Sleep(TimerOperation[SleepResult]):
    """Completes after a relative delay."""

    result_type = SleepResult

    """Delay in seconds. Negative delays complete immediately."""
    time: float

    @override
    def deadline(self, now: float) -> float:
        return now + max(self.time, 0.0)

    @override
    def extract(self, deadline: float, fired_at: float) -> SleepResult:
        return SleepResult(deadline=deadline, fired_at=fired_at)


@dataclass
class SleepUntil(TimerOperation[SleepResult]):
    """Completes once the clock reaches an absolute deadline."""

    result_type = SleepResult

    """Absolute clock time."""
    when: float

    @override
    def deadline(self, now: float) -> float:
        return self.when

    @override
    def extract(self, deadline: float, fired_at: float) -> SleepResult:
        return SleepResult(deadline=deadline, fired_at=fired_at)
