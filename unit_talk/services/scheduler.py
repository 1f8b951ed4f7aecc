"""
Clock and Interval Scheduling
=============================

Every recurring piece of work in the framework (agent health checks,
metrics collection, the dead-letter poll loop) is registered through an
``IntervalScheduler`` and every delay goes through a ``Clock``, so both
can be swapped out.

Production:
    ``SystemClock``                  -- wall clock + ``asyncio.sleep``
    ``APSchedulerIntervalScheduler`` -- APScheduler ``AsyncIOScheduler`` interval jobs

Tests:
    ``VirtualClock``      -- time only moves when told to
    ``VirtualScheduler``  -- fires due jobs when virtual time is advanced

Usage:
    clock = VirtualClock()
    scheduler = VirtualScheduler(clock)
    scheduler.add_interval_job("dlq-poll", dlq.process_queue, interval_seconds=30)
    await scheduler.advance(90)   # fires the job three times
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


# =============================================================================
# Clocks
# =============================================================================

class Clock(ABC):
    """Source of the current time and of delays."""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time."""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """Monotonic seconds, for measuring durations."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        pass


class SystemClock(Clock):
    """Real wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class VirtualClock(Clock):
    """
    Deterministic clock for tests.

    ``sleep()`` advances virtual time immediately (yielding once to the
    event loop) and records the requested delay in ``sleeps``.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._elapsed

    def advance(self, seconds: float) -> None:
        """Move virtual time forward without running anything."""
        self._now += timedelta(seconds=seconds)
        self._elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


# =============================================================================
# Schedulers
# =============================================================================

class IntervalScheduler(ABC):
    """Registry of recurring async jobs keyed by job id."""

    @abstractmethod
    def add_interval_job(self, job_id: str, func: JobFunc, interval_seconds: float) -> None:
        """Run *func* every *interval_seconds*; replaces an existing job with the same id."""
        pass

    @abstractmethod
    def remove_job(self, job_id: str) -> bool:
        """Stop running *job_id*. Returns False if it was not scheduled."""
        pass

    @abstractmethod
    def has_job(self, job_id: str) -> bool:
        pass

    def start(self) -> None:
        pass

    def shutdown(self) -> None:
        pass


class APSchedulerIntervalScheduler(IntervalScheduler):
    """
    ``IntervalScheduler`` on top of APScheduler's ``AsyncIOScheduler``.

    Jobs are registered with ``max_instances=1`` and ``coalesce=True`` so a
    slow tick is never overlapped by the next one and missed runs collapse
    into a single run.

    Args:
        scheduler: Optional existing scheduler to use. If None, creates a new one.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        if scheduler is None:
            self.scheduler = AsyncIOScheduler(timezone="UTC")
            self._owns_scheduler = True
        else:
            self.scheduler = scheduler
            self._owns_scheduler = False

    def add_interval_job(self, job_id: str, func: JobFunc, interval_seconds: float) -> None:
        self.scheduler.add_job(
            func,
            "interval",
            seconds=interval_seconds,
            id=job_id,
            name=job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.debug("Scheduled interval job %s every %.1fs", job_id, interval_seconds)

    def remove_job(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.debug("Removed interval job %s", job_id)
        return True

    def has_job(self, job_id: str) -> bool:
        return self.scheduler.get_job(job_id) is not None

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Interval scheduler started")

    def shutdown(self) -> None:
        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Interval scheduler stopped")


class _VirtualJob:
    def __init__(self, func: JobFunc, interval: float, next_run: datetime):
        self.func = func
        self.interval = interval
        self.next_run = next_run


class VirtualScheduler(IntervalScheduler):
    """
    Interval scheduler driven by a ``VirtualClock``.

    Nothing runs until ``advance()`` is awaited; due jobs then run one at a
    time in order of their due time, each with the clock set to that time.
    """

    def __init__(self, clock: VirtualClock):
        self.clock = clock
        self.jobs: Dict[str, _VirtualJob] = {}
        self.running = False

    def add_interval_job(self, job_id: str, func: JobFunc, interval_seconds: float) -> None:
        next_run = self.clock.now() + timedelta(seconds=interval_seconds)
        self.jobs[job_id] = _VirtualJob(func, interval_seconds, next_run)

    def remove_job(self, job_id: str) -> bool:
        return self.jobs.pop(job_id, None) is not None

    def has_job(self, job_id: str) -> bool:
        return job_id in self.jobs

    def start(self) -> None:
        self.running = True

    def shutdown(self) -> None:
        self.running = False

    async def advance(self, seconds: float) -> int:
        """
        Move virtual time forward by *seconds*, running every job that falls due.

        Returns:
            Number of job runs performed.
        """
        target = self.clock.now() + timedelta(seconds=seconds)
        runs = 0
        while True:
            due = [
                (job.next_run, job_id) for job_id, job in self.jobs.items()
                if job.next_run <= target
            ]
            if not due:
                break
            next_run, job_id = min(due)
            job = self.jobs[job_id]
            delta = (next_run - self.clock.now()).total_seconds()
            if delta > 0:
                self.clock.advance(delta)
            job.next_run = next_run + timedelta(seconds=job.interval)
            await job.func()
            runs += 1

        remaining = (target - self.clock.now()).total_seconds()
        if remaining > 0:
            self.clock.advance(remaining)
        return runs

    async def run_job(self, job_id: str) -> None:
        """Run one registered job immediately, ignoring its schedule."""
        await self.jobs[job_id].func()
