from collections.abc import Generator

from spindle_core.operations import TimerOperation
from spindle_core.results import Completion, TimerResult
from spindle_core.typedefs import WorkerOperationID
from spindle_loop.operations import Checkpoint, Park, WaitsOn

type TaskID = WorkerOperationID
type EventLoopOperation = TimerOperation | WaitsOn | Park | Checkpoint
type Coro[T] = Generator[EventLoopOperation, Completion[TimerResult] | None, T]
