"""Daily maintenance and session-sweep timers.

The jobs themselves live in jobs/maintenance.py; this module only decides when
they run, so tests can call ``run_once()`` instead of waiting.
"""

import asyncio
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_time(time_str: str) -> time:
    hour, minute = map(int, time_str.split(":"))
    return time(hour=hour, minute=minute)


def next_run_at(now: datetime, at: time) -> datetime:
    """The next instant strictly after ``now`` whose wall-clock time is ``at``."""
    candidate = now.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class DailyJob:
    """Runs ``job`` every day at a fixed wall-clock time, rescheduling itself after each run."""

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        at: time,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.job = job
        self.at = at
        self.clock = clock
        self._sleep = sleep

    async def run_once(self) -> object | None:
        try:
            return await self.job()
        except Exception as e:
            logger.error(f"{self.name} job failed: {e!r}")
            return None

    async def run_forever(self, max_runs: int | None = None) -> None:
        runs = 0
        while max_runs is None or runs < max_runs:
            now = self.clock()
            target = next_run_at(now, self.at)
            logger.info(f"Next {self.name} run scheduled for {target.isoformat()}")
            await self._sleep((target - now).total_seconds())
            await self.run_once()
            runs += 1


class IntervalJob:
    """Runs ``job`` every ``interval_seconds``."""

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval_seconds: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.job = job
        self.interval_seconds = interval_seconds
        self._sleep = sleep

    async def run_once(self) -> object | None:
        try:
            return await self.job()
        except Exception as e:
            logger.error(f"{self.name} job failed: {e!r}")
            return None

    async def run_forever(self, max_runs: int | None = None) -> None:
        runs = 0
        while max_runs is None or runs < max_runs:
            await self._sleep(self.interval_seconds)
            await self.run_once()
            runs += 1


class SchedulerManager:
    def __init__(self, jobs: list) -> None:
        self.jobs = jobs
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        for job in self.jobs:
            self._tasks.append(asyncio.create_task(job.run_forever(), name=job.name))
        logger.info(f"Started {len(self._tasks)} scheduled jobs: {', '.join(j.name for j in self.jobs)}")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def wait(self) -> None:
        await asyncio.gather(*self._tasks)
