class Cancelled(BaseException):  # noqa: N818
    """Thrown into a task at a suspension point when its cancel scope is cancelled.

    Derives from BaseException so that ``except Exception`` blocks in task code
    don't swallow it.
    """


class LoopClosedError(RuntimeError):
    """Raised when operating on a loop that has been closed."""


class DeadlockError(RuntimeError):
    """Raised when every task waits on another task or is parked, with no timer pending."""


class InvalidStateError(RuntimeError):
    """Raised when inspecting the outcome of a task that hasn't finished."""
