# billing/scheduler.py
"""
Wall-clock trigger for the billing jobs.

Jobs are plain functions ``fn(now) -> JobResult``; the scheduler only decides
when to call them. Every job has its own non-blocking lock so a tick that
fires while the previous run is still going is skipped, not queued.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from billing.clock import local_now
from billing.db.engine import CommitGate
from billing.models.common import JobResult

logger = logging.getLogger(__name__)

JobFn = Callable[[datetime], JobResult]

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"


class ItemRunner:
    """
    Runs one record of a batch, giving up after ``timeout`` seconds.

    Giving up closes the record's commit gate, so a record that is still
    working rolls back instead of committing behind the batch's back. A
    record that already started committing is waited for, and its real
    outcome is returned. With no timeout the call is inline.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def run(self, fn, *args):
        if self.timeout is None:
            return fn(*args)
        gate = CommitGate()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="billing-item")
        try:
            future = executor.submit(gate.run, fn, *args)
            try:
                return future.result(timeout=self.timeout)
            except FutureTimeout:
                if gate.abandon():
                    raise TimeoutError(f"Timed out after {self.timeout} seconds")
                logger.warning("Record passed its %ss timeout while committing; waiting for it", self.timeout)
                return future.result()
        finally:
            executor.shutdown(wait=False)


@dataclass
class ScheduledJob:
    name: str
    fn: JobFn
    period: str
    hour: int = 0
    minute: int = 0
    weekday: Optional[int] = None  # Monday == 0
    day: Optional[int] = None
    last_run: Optional[date] = None
    lock: threading.Lock = field(default_factory=threading.Lock)

    def is_due(self, now: datetime) -> bool:
        if self.last_run == now.date():
            return False
        if (now.hour, now.minute) < (self.hour, self.minute):
            return False
        if self.period == WEEKLY:
            return now.weekday() == self.weekday
        if self.period == MONTHLY:
            return now.day == self.day
        return True


class Scheduler:
    def __init__(self, poll_seconds: float = 30.0):
        self.poll_seconds = poll_seconds
        self._jobs: Dict[str, ScheduledJob] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _register(self, job: ScheduledJob) -> ScheduledJob:
        if job.name in self._jobs:
            raise ValueError(f"Job {job.name} is already registered")
        self._jobs[job.name] = job
        logger.info("Registered %s job %s at %02d:%02d", job.period, job.name, job.hour, job.minute)
        return job

    def register_daily_job(self, name: str, fn: JobFn, hour: int = 0, minute: int = 0) -> ScheduledJob:
        return self._register(ScheduledJob(name, fn, DAILY, hour, minute))

    def register_weekly_job(
        self, name: str, fn: JobFn, weekday: int, hour: int = 0, minute: int = 0
    ) -> ScheduledJob:
        if not 0 <= weekday <= 6:
            raise ValueError("weekday must be between 0 (Monday) and 6 (Sunday)")
        return self._register(ScheduledJob(name, fn, WEEKLY, hour, minute, weekday=weekday))

    def register_monthly_job(
        self, name: str, fn: JobFn, day: int = 1, hour: int = 0, minute: int = 0
    ) -> ScheduledJob:
        if not 1 <= day <= 28:
            raise ValueError("day must be between 1 and 28")
        return self._register(ScheduledJob(name, fn, MONTHLY, hour, minute, day=day))

    @property
    def jobs(self) -> List[str]:
        return list(self._jobs)

    def run_job(self, name: str, now: Optional[datetime] = None) -> Optional[JobResult]:
        """
        Run one job now. Returns ``None`` if the job is already running.
        A job that raises is reported as a result with one error.
        """
        job = self._jobs[name]
        now = now or local_now()
        if not job.lock.acquire(blocking=False):
            logger.warning("Job %s is still running; skipping this tick", name)
            return None
        try:
            logger.info("Starting job %s", name)
            result = job.fn(now)
        except Exception as exc:
            logger.exception("Job %s failed", name)
            result = JobResult(job=name, errors=[{"error": str(exc)}])
        finally:
            job.lock.release()

        logger.info(
            "Finished job %s: %d processed, %d succeeded, %d errors",
            name, result.processed, result.succeeded, len(result.errors),
        )
        return result

    def due_jobs(self, now: datetime) -> List[ScheduledJob]:
        return [job for job in self._jobs.values() if job.is_due(now)]

    def run_pending(self, now: Optional[datetime] = None) -> List[JobResult]:
        """Run every job due at ``now`` inline, in registration order."""
        now = now or local_now()
        results = []
        for job in self.due_jobs(now):
            job.last_run = now.date()
            result = self.run_job(job.name, now)
            if result is not None:
                results.append(result)
        return results

    def _loop(self) -> None:
        while not self._stop.is_set():
            now = local_now()
            for job in self.due_jobs(now):
                job.last_run = now.date()
                threading.Thread(
                    target=self.run_job,
                    args=(job.name, now),
                    name=f"billing-job-{job.name}",
                    daemon=True,
                ).start()
            self._stop.wait(self.poll_seconds)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="billing-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Scheduler stopped")
