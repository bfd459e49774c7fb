from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spindle_loop.typedefs import EventLoopOperation


@dataclass(slots=True, kw_only=True)
class Created:
    """Task exists but hasn't been started."""


@dataclass(slots=True, kw_only=True)
class Ready:
    """Task has been driven and produced an operation."""

    operation: EventLoopOperation


@dataclass(slots=True)
class Submitted:
    """Loop has processed the operation. Task is blocked until woken."""

    operation: EventLoopOperation
    op_id: int | None = None  # Only set for timer operations


@dataclass(slots=True, kw_only=True)
class Done[T]:
    """Task has finished, either with a return value or an exception."""

    result: T | None = None
    error: BaseException | None = None


type TaskState[T] = Created | Ready | Submitted | Done[T]
