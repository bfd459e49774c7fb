import errno

import pytest

from spindle_core.clock import VirtualClock
from spindle_core.log import get_logger
from spindle_core.operations import Cancel, Sleep, SleepUntil
from spindle_core.results import CancelResult, SleepResult
from spindle_core.worker import TimerWorker

logger = get_logger(__name__)


def test_timer_worker_single_sleep_wait() -> None:
    clock = VirtualClock()
    with TimerWorker(clock) as worker:
        worker.register(Sleep(time=2), 1)
        worker.submit()
        completion = worker.wait()

        assert completion.user_data == 1
        result = completion.unwrap()
        assert isinstance(result, SleepResult)
        assert result.deadline == 2
        assert clock.monotonic() == 2
        logger.info("Slept", fired_at=result.fired_at)


def test_timer_worker_completes_in_deadline_order() -> None:
    clock = VirtualClock()
    with TimerWorker(clock) as worker:
        worker.register(Sleep(time=3), 1)
        worker.register(Sleep(time=1), 2)
        worker.register(SleepUntil(when=2), 3)
        worker.submit()

        order = [worker.wait().user_data for _ in range(3)]

    assert order == [2, 3, 1]
    assert clock.monotonic() == 3


def test_timer_worker_ties_complete_in_submission_order() -> None:
    with TimerWorker(VirtualClock()) as worker:
        for user_data in (5, 3, 4):
            worker.register(Sleep(time=1), user_data)
        worker.submit()

        assert [worker.wait().user_data for _ in range(3)] == [5, 3, 4]


def test_timer_worker_multi_sleep_peek() -> None:
    clock = VirtualClock()
    with TimerWorker(clock) as worker:
        worker.register(Sleep(time=0), 1)
        worker.register(Sleep(time=0), 2)
        worker.register(Sleep(time=1), 3)
        worker.submit()

        first = worker.peek()
        second = worker.peek()
        assert first is not None
        assert second is not None
        assert {first.user_data, second.user_data} == {1, 2}

        # Not due yet.
        assert worker.peek() is None

        clock.advance(1)
        third = worker.peek()
        assert third is not None
        assert third.user_data == 3
        assert not worker.pending


def test_timer_worker_register_needs_submit() -> None:
    with TimerWorker(VirtualClock()) as worker:
        worker.register(Sleep(time=0), 1)
        assert not worker.pending
        assert worker.peek() is None

        worker.submit()
        assert worker.pending


def test_timer_worker_cancel_in_flight() -> None:
    clock = VirtualClock()
    with TimerWorker(clock) as worker:
        worker.register(Sleep(time=10), 1)
        worker.submit()
        worker.register(Cancel(target_identifier=1), 2)
        worker.submit()

        cancelled = worker.wait()
        assert cancelled.user_data == 1
        with pytest.raises(OSError) as exc_info:
            cancelled.unwrap()
        assert exc_info.value.errno == errno.ECANCELED

        cancel = worker.wait()
        assert cancel.user_data == 2
        assert cancel.unwrap() == CancelResult(found=True)

        assert not worker.pending
        # The cancelled sleep never made the clock move.
        assert clock.monotonic() == 0


def test_timer_worker_cancel_unknown_target() -> None:
    with TimerWorker(VirtualClock()) as worker:
        worker.register(Cancel(target_identifier=42), 1)
        worker.submit()

        completion = worker.wait()
        assert completion.unwrap() == CancelResult(found=False)


def test_cancel_operation_never_fires() -> None:
    cancel = Cancel(target_identifier=1)
    assert cancel.deadline(5.0) == 5.0
    with pytest.raises(RuntimeError, match="complete on submit"):
        cancel.extract(5.0, 5.0)


def test_timer_worker_wait_without_pending_raises() -> None:
    with (
        TimerWorker(VirtualClock()) as worker,
        pytest.raises(RuntimeError, match="no pending operations"),
    ):
        worker.wait()


def test_timer_worker_duplicate_user_data_raises() -> None:
    with TimerWorker(VirtualClock()) as worker:
        worker.register(Sleep(time=1), 1)
        with pytest.raises(ValueError, match="already in use"):
            worker.register(Sleep(time=1), 1)


def test_timer_worker_closed_raises() -> None:
    worker = TimerWorker(VirtualClock())
    with worker:
        worker.register(Sleep(time=1), 1)
        worker.submit()

    with pytest.raises(RuntimeError, match="closed"):
        worker.register(Sleep(time=1), 2)
    with pytest.raises(RuntimeError, match="closed"):
        worker.peek()


def test_timer_worker_real_clock_sleeps(timing) -> None:
    with TimerWorker() as worker:
        worker.register(Sleep(time=0.1), 1)
        worker.submit()
        timing.start()
        result = worker.wait().unwrap()

    timing.assert_elapsed_between(0.08, 0.3, msg="real sleep of 0.1s")
    assert isinstance(result, SleepResult)
    assert result.overshoot >= 0


def test_virtual_clock_cannot_go_backwards() -> None:
    clock = VirtualClock(now=5)
    with pytest.raises(ValueError, match="backwards"):
        clock.advance(-1)
    clock.sleep(-1)
    assert clock.monotonic() == 5
