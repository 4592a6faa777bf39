"""
Job Scheduler

Runs the batch jobs at fixed wall-clock times inside the API process:

    cache-cleanup        daily   01:00
    weekly-correlation   Sunday  02:00
    daily-recompute      daily   03:00

Times are in the configured timezone (America/New_York by default).
Jobs run in a worker thread so the event loop keeps serving requests.
A failed run is logged and simply waits for its next occurrence; a job
whose previous run is still going is skipped.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set
from zoneinfo import ZoneInfo

from thanalytica.jobs.batch import BatchJobRunner, JobAbortedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    """A job name plus the wall-clock time it runs at."""
    name: str
    hour: int
    minute: int = 0
    weekday: Optional[int] = None  # Monday=0 ... Sunday=6, None for daily

    def next_run_after(self, now: datetime) -> datetime:
        """First occurrence strictly after ``now`` (in now's timezone)."""
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if self.weekday is None:
            if candidate <= now:
                candidate += timedelta(days=1)
            return candidate

        candidate += timedelta(days=(self.weekday - now.weekday()) % 7)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate


DEFAULT_SCHEDULE = (
    ScheduledJob("cache-cleanup", hour=1),
    ScheduledJob("weekly-correlation", hour=2, weekday=6),
    ScheduledJob("daily-recompute", hour=3),
)


class JobScheduler:
    """
    Asyncio loop that fires scheduled batch jobs.

    Usage:
        scheduler = JobScheduler(runner, timezone="America/New_York")
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        runner: BatchJobRunner,
        schedule: Optional[List[ScheduledJob]] = None,
        timezone: str = "America/New_York",
        poll_seconds: int = 30,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.runner = runner
        self.schedule = list(schedule or DEFAULT_SCHEDULE)
        self.tz = ZoneInfo(timezone)
        self.poll_seconds = poll_seconds
        self._now_fn = now

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._job_tasks: Set[asyncio.Task] = set()
        self._active: Set[str] = set()
        self._next_runs: Dict[str, datetime] = {}
        self.last_reports: Dict[str, dict] = {}

        unknown = [job.name for job in self.schedule if job.name not in runner.jobs]
        if unknown:
            raise ValueError(f"Unknown scheduled jobs: {unknown}")

    def _now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn().astimezone(self.tz)
        return datetime.now(self.tz)

    def next_runs(self) -> Dict[str, datetime]:
        """Next planned run per job (planned lazily on first check)."""
        now = self._now()
        for job in self.schedule:
            self._next_runs.setdefault(job.name, job.next_run_after(now))
        return dict(self._next_runs)

    async def run_pending(self) -> List[str]:
        """
        Start every job whose planned time has passed.

        Returns:
            Names of jobs started by this call
        """
        now = self._now()
        planned = self.next_runs()
        started = []

        for job in self.schedule:
            if now < planned[job.name]:
                continue
            self._next_runs[job.name] = job.next_run_after(now)

            if job.name in self._active:
                logger.warning(f"Skipping {job.name}: previous run still in progress")
                continue

            self._active.add(job.name)
            task = asyncio.create_task(self._execute(job))
            self._job_tasks.add(task)
            task.add_done_callback(self._job_tasks.discard)
            started.append(job.name)

        return started

    async def _execute(self, job: ScheduledJob) -> None:
        logger.info(f"Scheduled job starting: {job.name}")
        try:
            report = await asyncio.to_thread(self.runner.run_job, job.name)
            self.last_reports[job.name] = report.to_dict()
        except JobAbortedError as e:
            logger.error(f"Scheduled job {job.name} aborted, will retry at next occurrence: {e}")
        except Exception as e:
            logger.error(f"Scheduled job {job.name} failed: {e}")
        finally:
            self._active.discard(job.name)

    async def wait_idle(self) -> None:
        """Wait for job runs that are currently in progress."""
        if self._job_tasks:
            await asyncio.gather(*list(self._job_tasks), return_exceptions=True)

    async def start(self) -> None:
        if self._running:
            logger.warning("Job scheduler already running")
            return

        self._running = True

        async def scheduler_loop():
            while self._running:
                try:
                    await self.run_pending()
                except Exception as e:
                    logger.error(f"Job scheduler error: {e}")
                await asyncio.sleep(self.poll_seconds)

        self._task = asyncio.create_task(scheduler_loop())
        planned = ", ".join(f"{name} at {when.isoformat()}" for name, when in self.next_runs().items())
        logger.info(f"Job scheduler started ({self.tz.key}): {planned}")

    async def stop(self) -> None:
        """Stop the loop. Job runs already in a worker thread finish on their own."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Job scheduler stopped")
