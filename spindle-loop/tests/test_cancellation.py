from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from spindle_loop.cancellation import fail_after, move_on_after
from spindle_loop.exceptions import Cancelled
from spindle_loop.lowlevel import checkpoint, current_time
from spindle_loop.task import create_task
from spindle_loop.timerio import sleep

if TYPE_CHECKING:
    from spindle_loop.typedefs import Coro


class TestFailAfter:
    def test_cancels_when_timeout_expires(self, run_virtual, virtual_clock) -> None:
        def coro() -> Coro[None]:
            with fail_after(0.1):
                yield from sleep(0.5)

        with pytest.raises(Cancelled, match="did not finish within 0.1 seconds"):
            run_virtual(coro())

        assert virtual_clock.monotonic() == pytest.approx(0.1)

    def test_cancels_in_real_time(self, run_coro, timing) -> None:
        def coro() -> Coro[None]:
            timing.start()
            with fail_after(0.1):
                yield from sleep(0.5)

        with pytest.raises(Cancelled):
            run_coro(coro())

        timing.assert_elapsed_between(
            0.05, 0.3, msg="fail_after(0.1) should fire near 0.1s"
        )

    def test_completes_when_work_finishes_first(self, run_virtual) -> None:
        def coro() -> Coro[float]:
            with fail_after(0.2):
                yield from sleep(0.1)
            return current_time()

        assert run_virtual(coro()) == pytest.approx(0.1)

    def test_cancel_scope_not_cancelled_on_normal_exit(self, run_virtual) -> None:
        def coro() -> Coro[None]:
            with fail_after(0.5) as cancel_scope:
                yield from sleep(0.1)
            assert not cancel_scope.cancelled
            assert not cancel_scope.cancelled_caught

        run_virtual(coro())


class TestMoveOnAfter:
    def test_moves_on_when_timeout_expires(self, run_virtual) -> None:
        def coro() -> Coro[float]:
            with move_on_after(0.1) as cancel_scope:
                yield from sleep(0.5)
            assert cancel_scope.cancelled_caught
            return current_time()

        assert run_virtual(coro()) == pytest.approx(0.1)

    def test_outer_scope_cancellation_propagates(self, run_virtual) -> None:
        def coro() -> Coro[None]:
            with fail_after(0.1), move_on_after(0.5):
                yield from sleep(1)

        with pytest.raises(Cancelled):
            run_virtual(coro())

    def test_cancellation_is_level_triggered(self, run_virtual) -> None:
        attempts: list[float] = []

        def coro() -> Coro[float]:
            with move_on_after(0.1):
                try:
                    yield from sleep(1)
                except Cancelled:
                    attempts.append(current_time())
                # Still inside the cancelled scope.
                yield from sleep(1)
            return current_time()

        assert run_virtual(coro()) == pytest.approx(0.1)
        assert attempts == [pytest.approx(0.1)]


class TestShielding:
    def test_shield_blocks_then_outer_scope_raises(self, run_virtual) -> None:
        def coro() -> Coro[None]:
            with fail_after(0.1):
                with move_on_after(0.2, shield=True):
                    yield from sleep(0.5)
                yield from sleep(0.1)

        with pytest.raises(Cancelled):
            run_virtual(coro())

    def test_shield_protects_from_outer_cancellation(self, run_virtual) -> None:
        def coro() -> Coro[float]:
            with fail_after(0.1), move_on_after(1, shield=True):
                yield from sleep(0.3)
            return current_time()

        assert run_virtual(coro()) == pytest.approx(0.3)


class TestTaskCancel:
    def test_cancel_sleeping_task(self, run_virtual) -> None:
        def sleeper() -> Coro[None]:
            yield from sleep(10)

        def entry() -> Coro[float]:
            task = create_task(sleeper())
            yield from sleep(1)
            assert task.cancel()
            with pytest.raises(Cancelled):
                yield from task.wait()
            assert task.is_cancelled
            return current_time()

        assert run_virtual(entry()) == 1

    def test_cancel_before_start_skips_body(self, run_virtual) -> None:
        log: list[str] = []

        def never() -> Coro[None]:
            log.append("ran")
            yield from checkpoint()

        def entry() -> Coro[None]:
            task = create_task(never())
            task.cancel()
            with pytest.raises(Cancelled):
                yield from task.wait()

        run_virtual(entry())
        assert log == []

    def test_cancel_task_waiting_on_another(self, run_virtual) -> None:
        def slow() -> Coro[str]:
            yield from sleep(5)
            return "slow done"

        def waiter(target) -> Coro[str]:
            return (yield from target.wait())

        def entry() -> Coro[str]:
            slow_task = create_task(slow())
            waiter_task = create_task(waiter(slow_task))
            yield from sleep(1)
            waiter_task.cancel()
            yield from sleep(0.1)

            assert waiter_task.is_cancelled
            # The awaited task carries on regardless.
            return (yield from slow_task.wait())

        assert run_virtual(entry()) == "slow done"

    def test_cancel_finished_task(self, run_virtual) -> None:
        def quick() -> Coro[str]:
            yield from checkpoint()
            return "quick"

        def entry() -> Coro[str]:
            task = create_task(quick())
            result = yield from task.wait()
            assert not task.cancel()
            return result

        assert run_virtual(entry()) == "quick"

    def test_task_may_absorb_cancellation(self, run_virtual) -> None:
        def stubborn() -> Coro[str]:
            try:
                yield from sleep(10)
            except Cancelled:
                return "cleaned up"
            return "slept"

        def entry() -> Coro[str]:
            task = create_task(stubborn())
            yield from sleep(1)
            task.cancel()
            return (yield from task.wait())

        assert run_virtual(entry()) == "cleaned up"
