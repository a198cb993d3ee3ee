import threading

import pytest

from scheduler.runner import PeriodicTask


def test_run_forever_until_stopped():
    ticks = []
    task = None

    def job():
        ticks.append(1)
        if len(ticks) == 3:
            task.stop()

    task = PeriodicTask(job, interval_sec=0.01)
    task.run_forever()
    assert len(ticks) == 3
    assert task.runs == 3


def test_failing_job_does_not_kill_loop():
    calls = []
    task = None

    def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first tick fails")
        task.stop()

    task = PeriodicTask(job, interval_sec=0.01)
    task.run_forever()
    assert len(calls) == 2


def test_background_start_stop():
    ran = threading.Event()
    task = PeriodicTask(ran.set, interval_sec=30)
    with task:
        assert ran.wait(2.0)
        assert task.running
    # stop() interrupts the 30s wait right away
    assert not task.running


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        PeriodicTask(lambda: None, interval_sec=0)
