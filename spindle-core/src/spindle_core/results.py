from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spindle_core.typedefs import WorkerOperationID


@dataclass(frozen=True)
class Completion[T: TimerResult]:
    """A finished operation, as handed back by the worker."""

    user_data: WorkerOperationID
    result: T | OSError

    def unwrap(self) -> T:
        """Rust style unwrapping of results."""
        if isinstance(self.result, OSError):
            raise self.result

        return self.result


@dataclass(frozen=True)
class TimerResult:
    """Base class for all timer operation results."""


@dataclass(frozen=True)
class SleepResult(TimerResult):
    """Result of a sleep operation."""

    """The clock time the sleep was due."""
    deadline: float

    """The clock time the worker actually fired it."""
    fired_at: float

    @property
    def overshoot(self) -> float:
        """How late the sleep fired."""
        return max(self.fired_at - self.deadline, 0.0)


@dataclass(frozen=True)
class CancelResult(TimerResult):
    """Result of a cancel operation."""

    """Whether the targeted operation was still in flight."""
    found: bool
