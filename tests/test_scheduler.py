"""Tests for the periodic worker."""

import threading

import pytest

from safezone.services.scheduler import PeriodicWorker


def test_runs_until_stopped():
    ran = threading.Event()
    worker = PeriodicWorker("test", 0.01, ran.set)
    worker.start()
    try:
        assert ran.wait(timeout=5)
        assert worker.is_running
    finally:
        worker.stop(timeout=5)
    assert not worker.is_running
    runs = worker.runs
    assert runs >= 1
    # Joined on stop, so no further run can start
    assert worker.runs == runs


def test_failing_run_is_counted():
    def boom():
        raise RuntimeError("task failed")

    worker = PeriodicWorker("boom", 60, boom)
    worker.run_once()
    worker.run_once()
    assert worker.runs == 2
    assert worker.failures == 2


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        PeriodicWorker("bad", 0, lambda: None)
