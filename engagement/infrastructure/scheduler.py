"""In-process periodic jobs for background reconciliation.

Each job sleeps for its interval, then runs once; a failing run is logged
and counted, and the job keeps its schedule.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

from engagement.shared.utils.logging import get_logger

logger = get_logger(__name__)

JobFunc = Callable[[], Coroutine[Any, Any, Any]]


@dataclass
class PeriodicJob:
    """A registered job and its run statistics."""

    name: str
    interval_seconds: float
    func: JobFunc = field(repr=False)
    runs: int = 0
    failures: int = 0
    last_error: str | None = None


class PeriodicScheduler:
    """Runs registered jobs on the caller's event loop until stopped."""

    def __init__(self) -> None:
        self._jobs: dict[str, PeriodicJob] = {}
        self._handles: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> list[PeriodicJob]:
        return list(self._jobs.values())

    def register(self, name: str, interval_seconds: float, func: JobFunc) -> PeriodicJob:
        """Register a job; names are unique.

        Raises:
            ValueError: If the interval is not positive or the name is taken
        """
        if interval_seconds <= 0:
            raise ValueError(f"Interval for job '{name}' must be positive")
        if name in self._jobs:
            raise ValueError(f"Job '{name}' is already registered")
        job = PeriodicJob(name=name, interval_seconds=interval_seconds, func=func)
        self._jobs[name] = job
        return job

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._handles = [asyncio.create_task(self._loop(job)) for job in self._jobs.values()]
        logger.info("scheduler_started", jobs=sorted(self._jobs))

    async def stop(self) -> None:
        self._running = False
        for handle in self._handles:
            handle.cancel()
        await asyncio.gather(*self._handles, return_exceptions=True)
        self._handles.clear()
        logger.info("scheduler_stopped")

    async def run_once(self, name: str) -> bool:
        """Run a job immediately.

        Returns:
            False if the run raised
        """
        job = self._jobs[name]
        job.runs += 1
        try:
            await job.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            job.last_error = type(e).__name__
            logger.error("periodic_job_failed", job=name, error_type=job.last_error, failures=job.failures)
            return False
        return True

    async def _loop(self, job: PeriodicJob) -> None:
        while self._running:
            await asyncio.sleep(job.interval_seconds)
            await self.run_once(job.name)


__all__ = ["PeriodicJob", "PeriodicScheduler"]
