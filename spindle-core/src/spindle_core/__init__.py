"""Spindle Core package."""

__version__ = "0.1.0"

from spindle_core.clock import Clock, MonotonicClock, VirtualClock
from spindle_core.worker import TimerWorker

__all__ = [
    "Clock",
    "MonotonicClock",
    "TimerWorker",
    "VirtualClock",
]
