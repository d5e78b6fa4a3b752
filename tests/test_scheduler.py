import asyncio
from datetime import datetime, time, timezone

from jobs.scheduler import DailyJob, IntervalJob, next_run_at, parse_time

from conftest import FakeClock


def test_parse_time() -> None:
    assert parse_time("02:00") == time(2, 0)
    assert parse_time("23:45") == time(23, 45)


def test_next_run_is_later_today_or_tomorrow() -> None:
    morning = datetime(2025, 3, 10, 1, 30, tzinfo=timezone.utc)
    assert next_run_at(morning, time(2, 0)) == datetime(2025, 3, 10, 2, 0, tzinfo=timezone.utc)

    exactly = datetime(2025, 3, 10, 2, 0, tzinfo=timezone.utc)
    assert next_run_at(exactly, time(2, 0)) == datetime(2025, 3, 11, 2, 0, tzinfo=timezone.utc)

    evening = datetime(2025, 3, 10, 22, 0, tzinfo=timezone.utc)
    assert next_run_at(evening, time(2, 0)) == datetime(2025, 3, 11, 2, 0, tzinfo=timezone.utc)


def test_daily_job_sleeps_until_scheduled_time() -> None:
    clock = FakeClock(datetime(2025, 3, 10, 1, 0, tzinfo=timezone.utc))
    slept: list[float] = []
    runs: list[datetime] = []

    async def sleep(seconds: float) -> None:
        slept.append(seconds)
        clock.advance(seconds=seconds)

    async def job():
        runs.append(clock())
        return "done"

    daily = DailyJob("daily_maintenance", job, time(2, 0), clock=clock, sleep=sleep)
    asyncio.run(daily.run_forever(max_runs=2))
    assert slept == [3600.0, 86400.0]
    assert [r.day for r in runs] == [10, 11]


def test_failing_job_is_logged_not_raised(caplog) -> None:
    async def job():
        raise RuntimeError("boom")

    interval = IntervalJob("session_sweep", job, 60, sleep=lambda s: asyncio.sleep(0))
    assert asyncio.run(interval.run_once()) is None
    assert "session_sweep job failed" in caplog.text

    calls = []

    async def counting_job():
        calls.append(1)

    asyncio.run(IntervalJob("sweep", counting_job, 60, sleep=lambda s: asyncio.sleep(0)).run_forever(max_runs=3))
    assert len(calls) == 3
