import asyncio

import pytest

from eacc_agent.errors import TransportError
from eacc_agent.scheduler import PeriodicTask


def test_runs_repeatedly_until_stopped():
    async def runner():
        calls = []

        async def target():
            calls.append(asyncio.get_running_loop().time())

        task = PeriodicTask(0.01, target, "tick")
        task.start()
        await asyncio.sleep(0.08)
        await task.stop()
        return task, calls

    task, calls = asyncio.run(runner())
    assert len(calls) >= 3
    assert task.runs == len(calls)
    assert not task.running


def test_runs_of_the_same_timer_never_overlap():
    async def runner():
        active = 0
        peak = 0

        async def slow_target():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.03)
            active -= 1

        task = PeriodicTask(0.005, slow_target, "slow")
        task.start()
        await asyncio.sleep(0.12)
        await task.stop()
        return peak, task.runs

    peak, runs = asyncio.run(runner())
    assert peak == 1
    assert runs >= 2


def test_errors_are_logged_and_do_not_stop_the_timer():
    errors = []

    async def runner():
        outcomes = iter([TransportError("rpc down"), RuntimeError("bug"), None, None, None, None, None])

        async def target():
            outcome = next(outcomes, None)
            if outcome is not None:
                raise outcome

        task = PeriodicTask(0.01, target, "flaky", on_error=errors.append)
        task.start()
        await asyncio.sleep(0.06)
        await task.stop()
        return task.runs

    runs = asyncio.run(runner())
    assert runs >= 3
    assert [type(exc) for exc in errors] == [RuntimeError]


def test_stop_cancels_a_run_that_exceeds_the_grace_period():
    async def runner():
        started = asyncio.Event()
        cancelled = []

        async def stuck():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        task = PeriodicTask(1, stuck, "stuck")
        task.start()
        await started.wait()
        await task.stop(grace_seconds=0.01)
        return cancelled, task.running

    cancelled, running = asyncio.run(runner())
    assert cancelled == [True]
    assert not running


def test_stop_waits_for_in_flight_run_within_grace():
    async def runner():
        finished = []

        async def target():
            await asyncio.sleep(0.02)
            finished.append(True)

        task = PeriodicTask(5, target, "graceful")
        task.start()
        await asyncio.sleep(0.005)
        await task.stop(grace_seconds=1)
        return finished

    assert asyncio.run(runner()) == [True]


def test_delayed_start_and_validation():
    async def runner():
        calls = []

        async def target():
            calls.append(1)

        task = PeriodicTask(5, target, "later", run_immediately=False)
        task.start()
        await asyncio.sleep(0.02)
        await task.stop()
        return calls

    assert asyncio.run(runner()) == []
    with pytest.raises(ValueError):
        PeriodicTask(0, lambda: None, "bad")
