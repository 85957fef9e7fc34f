from __future__ import annotations

import logging
import threading
import time

import pytest
from datetime import datetime, timezone

from store_service.scheduler import ReconciliationScheduler
from store_service.synchronizer import SyncReport


def _report(error=None):
    return SyncReport(started_at=datetime.now(timezone.utc), error=error)


class CountingJob:
    def __init__(self, target=1, fail_first=0):
        self.calls = 0
        self.fail_first = fail_first
        self.target = target
        self.reached = threading.Event()

    def __call__(self):
        self.calls += 1
        if self.calls >= self.target:
            self.reached.set()
        if self.calls <= self.fail_first:
            raise RuntimeError("sync exploded")
        return _report()


def test_start_twice_arms_one_timer():
    job = CountingJob()
    scheduler = ReconciliationScheduler(job, interval_seconds=60)

    assert scheduler.start() is True
    assert scheduler.start() is False
    assert job.reached.wait(2.0)
    time.sleep(0.2)

    assert job.calls == 1
    assert scheduler.ticks == 1
    names = [thread.name for thread in threading.enumerate()]
    assert names.count("payment-sync") == 1
    scheduler.stop(timeout=2.0)


def test_runs_repeatedly_on_interval():
    job = CountingJob(target=3)
    scheduler = ReconciliationScheduler(job, interval_seconds=0.01)

    scheduler.start()
    try:
        assert job.reached.wait(2.0)
    finally:
        scheduler.stop(timeout=2.0)

    assert job.calls >= 3
    assert not scheduler.running


def test_failing_run_does_not_cancel_timer(caplog):
    job = CountingJob(target=3, fail_first=2)
    scheduler = ReconciliationScheduler(job, interval_seconds=0.01)

    with caplog.at_level(logging.ERROR, logger="store_service.scheduler"):
        scheduler.start()
        try:
            assert job.reached.wait(2.0)
        finally:
            scheduler.stop(timeout=2.0)

    assert job.calls >= 3
    assert "Payment sync run failed" in caplog.text


def test_aborted_pass_is_logged(caplog):
    done = threading.Event()

    def job():
        done.set()
        return _report(error="database is locked")

    scheduler = ReconciliationScheduler(job, interval_seconds=60)
    with caplog.at_level(logging.ERROR, logger="store_service.scheduler"):
        scheduler.start()
        assert done.wait(2.0)
        scheduler.stop(timeout=2.0)

    assert "database is locked" in caplog.text


def test_stop_ends_worker():
    job = CountingJob()
    scheduler = ReconciliationScheduler(job, interval_seconds=60)

    scheduler.start()
    assert job.reached.wait(2.0)
    scheduler.stop(timeout=2.0)

    assert not scheduler.running


@pytest.mark.parametrize("interval", [0, -5])
def test_non_positive_interval_rejected(interval):
    with pytest.raises(ValueError):
        ReconciliationScheduler(CountingJob(), interval_seconds=interval)
