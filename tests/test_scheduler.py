import threading
import time
from datetime import datetime

import pytest
from sqlalchemy import select

from billing.db.engine import CommitGate, unit_of_work
from billing.db.schema import clients
from billing.models.common import JobResult
from billing.scheduler import ItemRunner, Scheduler

MONDAY = datetime(2024, 6, 3, 4, 30)


def _job(name, calls):
    def run(now):
        calls.append((name, now))
        return JobResult(job=name, processed=1, succeeded=1)

    return run


def test_due_rules():
    calls = []
    scheduler = Scheduler()
    daily = scheduler.register_daily_job("daily", _job("daily", calls), hour=1)
    weekly = scheduler.register_weekly_job("weekly", _job("weekly", calls), weekday=0, hour=3)
    monthly = scheduler.register_monthly_job("monthly", _job("monthly", calls), day=1, hour=4)

    assert daily.is_due(MONDAY)
    assert not daily.is_due(datetime(2024, 6, 3, 0, 59))
    assert weekly.is_due(MONDAY)
    assert not weekly.is_due(datetime(2024, 6, 4, 4, 30))
    assert not monthly.is_due(MONDAY)
    assert monthly.is_due(datetime(2024, 7, 1, 4, 0))


def test_run_pending_runs_each_job_once_per_day():
    calls = []
    scheduler = Scheduler()
    scheduler.register_daily_job("daily", _job("daily", calls), hour=1)
    scheduler.register_weekly_job("weekly", _job("weekly", calls), weekday=0, hour=3)

    results = scheduler.run_pending(MONDAY)
    assert [result.job for result in results] == ["daily", "weekly"]
    assert scheduler.run_pending(datetime(2024, 6, 3, 23, 0)) == []

    scheduler.run_pending(datetime(2024, 6, 4, 1, 0))
    assert [name for name, _ in calls] == ["daily", "weekly", "daily"]


def test_duplicate_and_invalid_registrations():
    scheduler = Scheduler()
    scheduler.register_daily_job("daily", _job("daily", []))
    with pytest.raises(ValueError):
        scheduler.register_daily_job("daily", _job("daily", []))
    with pytest.raises(ValueError):
        scheduler.register_weekly_job("weekly", _job("weekly", []), weekday=7)
    with pytest.raises(ValueError):
        scheduler.register_monthly_job("monthly", _job("monthly", []), day=31)
    assert scheduler.jobs == ["daily"]


def test_overlapping_run_is_skipped():
    started = threading.Event()
    release = threading.Event()

    def slow(now):
        started.set()
        release.wait(5)
        return JobResult(job="slow", processed=1, succeeded=1)

    scheduler = Scheduler()
    scheduler.register_daily_job("slow", slow)

    results = []
    worker = threading.Thread(target=lambda: results.append(scheduler.run_job("slow", MONDAY)))
    worker.start()
    assert started.wait(5)

    assert scheduler.run_job("slow", MONDAY) is None

    release.set()
    worker.join(5)
    assert results[0].succeeded == 1


def test_failing_job_becomes_error_result():
    def broken(now):
        raise RuntimeError("database unavailable")

    scheduler = Scheduler()
    scheduler.register_daily_job("broken", broken)
    result = scheduler.run_job("broken", MONDAY)

    assert result.job == "broken"
    assert result.errors == [{"error": "database unavailable"}]
    # the lock is released after a failure
    assert scheduler.run_job("broken", MONDAY) is not None


def test_item_runner_inline_and_timeout():
    assert ItemRunner().run(lambda a, b: a + b, 2, 3) == 5
    assert ItemRunner(timeout=5).run(lambda a: a * 2, 4) == 8

    with pytest.raises(TimeoutError):
        ItemRunner(timeout=0.05).run(time.sleep, 0.5)


def _client_names(engine):
    with engine.connect() as conn:
        return conn.execute(select(clients.c.name)).scalars().all()


def test_timed_out_record_does_not_commit(engine):
    def slow_write(name):
        with unit_of_work(engine) as conn:
            conn.execute(clients.insert().values(name=name, email="slow@example.com"))
            time.sleep(0.5)
        return name

    with pytest.raises(TimeoutError):
        ItemRunner(timeout=0.1).run(slow_write, "Slow Ltd")
    time.sleep(1)

    assert "Slow Ltd" not in _client_names(engine)


def test_record_past_its_commit_is_waited_for(engine):
    def write_then_linger(name):
        with unit_of_work(engine) as conn:
            conn.execute(clients.insert().values(name=name, email="late@example.com"))
        time.sleep(0.3)
        return name

    assert ItemRunner(timeout=0.1).run(write_then_linger, "Late Ltd") == "Late Ltd"
    assert "Late Ltd" in _client_names(engine)


def test_commit_gate():
    gate = CommitGate()
    assert gate.abandon()
    with pytest.raises(TimeoutError):
        gate.claim()

    gate = CommitGate()
    gate.claim()
    assert not gate.abandon()
    assert gate.committing

def test_start_and_stop():
    calls = []
    scheduler = Scheduler(poll_seconds=0.01)
    scheduler.register_daily_job("daily", _job("daily", calls))
    scheduler.start()
    deadline = time.monotonic() + 5
    while not calls and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop(timeout=5)
    assert [name for name, _ in calls] == ["daily"]
