# src/goalsync/sync/scheduler.py
"""
Periodic job scheduling for background sync and refresh.

An asyncio loop wakes every ``tick_interval`` and runs the registered jobs
that are due. One failing job never stops the others, and a job that keeps
failing is circuit-broken until it is reset.

Example:
    scheduler = PeriodicScheduler(tick_interval=timedelta(seconds=1))
    scheduler.register(ScheduledJob(
        name="goal_sync",
        callback=orchestrator.check_and_sync,
        interval=timedelta(minutes=5),
    ))
    await scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..models import utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# ScheduledJob
# =============================================================================


@dataclass
class ScheduledJob:
    """
    A callback run every ``interval``.

    Attributes:
        name: Unique job identifier
        callback: Async function to call
        interval: Time between runs
        run_immediately: Run on the first tick instead of one interval after start
        max_consecutive_errors: Circuit breaker threshold
    """

    name: str
    callback: Callable[[], Awaitable[Any]]
    interval: timedelta
    run_immediately: bool = False
    enabled: bool = True

    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0

    error_count: int = 0
    consecutive_errors: int = 0
    max_consecutive_errors: int = 5
    last_error: Optional[str] = None

    def should_run(self, now: datetime) -> bool:
        if not self.enabled or self.is_circuit_broken:
            return False
        if self.next_run is None:
            return self.run_immediately
        return now >= self.next_run

    def schedule_next(self, now: datetime) -> None:
        self.last_run = now
        self.next_run = now + self.interval
        self.run_count += 1

    def record_success(self) -> None:
        self.consecutive_errors = 0
        self.last_error = None

    def record_error(self, error: str) -> None:
        self.error_count += 1
        self.consecutive_errors += 1
        self.last_error = error

    def reset_circuit_breaker(self) -> None:
        self.consecutive_errors = 0
        self.last_error = None
        logger.info("Circuit breaker reset for job: %s", self.name)

    @property
    def is_circuit_broken(self) -> bool:
        return self.consecutive_errors >= self.max_consecutive_errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval.total_seconds(),
            "enabled": self.enabled,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error,
            "is_circuit_broken": self.is_circuit_broken,
        }


# =============================================================================
# PeriodicScheduler
# =============================================================================


class PeriodicScheduler:
    """
    Runs registered jobs at their intervals on the current event loop.

    Jobs run sequentially within a tick, so two jobs registered on the same
    scheduler never overlap each other.
    """

    def __init__(
        self,
        tick_interval: timedelta = timedelta(seconds=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.tick_interval = tick_interval
        self._clock = clock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._running = False
        self._paused = False
        self._loop_task: Optional[asyncio.Task] = None
        self._on_error: List[Callable[[str, Exception], Awaitable[None]]] = []

    def register(self, job: ScheduledJob) -> None:
        if job.next_run is None and not job.run_immediately:
            job.next_run = self._clock() + job.interval
        self._jobs[job.name] = job
        logger.debug("Registered job %s (every %ss)", job.name, job.interval.total_seconds())

    def unregister(self, name: str) -> None:
        if self._jobs.pop(name, None) is not None:
            logger.debug("Unregistered job %s", name)

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(name)

    def list_jobs(self) -> List[str]:
        return list(self._jobs.keys())

    def on_error(self, callback: Callable[[str, Exception], Awaitable[None]]) -> None:
        """Register an async callback(job_name, exception) for job failures."""
        self._on_error.append(callback)

    async def start(self) -> None:
        """Start the scheduling loop. Calling it twice is harmless."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop())
        logger.info("Scheduler started (tick: %ss)", self.tick_interval.total_seconds())

    async def stop(self) -> None:
        """Stop the loop, waiting for it to unwind."""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Scheduler stopped")

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def tick(self) -> None:
        """Run every due job once."""
        now = self._clock()
        for job in list(self._jobs.values()):
            if job.should_run(now):
                await self._run_job(job, now)

    async def run_job_now(self, name: str) -> bool:
        """
        Run a job immediately, ignoring its schedule.

        Returns:
            True if the job exists and completed without error
        """
        job = self._jobs.get(name)
        if job is None:
            return False
        return await self._run_job(job, self._clock())

    async def _run_job(self, job: ScheduledJob, now: datetime) -> bool:
        job.schedule_next(now)
        try:
            await job.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.record_error(str(e))
            logger.error("Job %s failed (%d consecutive): %s", job.name, job.consecutive_errors, e)
            if job.is_circuit_broken:
                logger.warning("Job %s circuit-broken after %d errors", job.name, job.consecutive_errors)
            for callback in self._on_error:
                try:
                    await callback(job.name, e)
                except Exception as cb_error:
                    logger.error("Scheduler error callback failed: %s", cb_error)
            return False
        job.record_success()
        return True

    async def _loop(self) -> None:
        while self._running:
            if not self._paused:
                await self.tick()
            await asyncio.sleep(self.tick_interval.total_seconds())

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "paused": self._paused,
            "tick_interval_seconds": self.tick_interval.total_seconds(),
            "jobs": {name: job.to_dict() for name, job in self._jobs.items()},
        }
