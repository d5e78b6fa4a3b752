"""Bounded-concurrency, fault-isolated iteration over the learner population."""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_BATCH_DELAY_SECONDS = 2.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BatchReport:
    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    batch_sizes: list[int] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    results: list = field(default_factory=list)
    side_effect_errors: list[dict] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or _utcnow()
        return round((end - self.started_at).total_seconds(), 3)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["duration_seconds"] = self.duration_seconds
        return data


def _identity(item) -> tuple[str, str | None]:
    if isinstance(item, dict):
        return str(item.get("learner_id") or item.get("id")), item.get("name")
    return str(item), None


class BatchOrchestrator:
    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.batch_size = batch_size
        self.delay_seconds = delay_seconds
        self.clock = clock
        self._sleep = sleep

    async def run_batch(
        self,
        population_fetcher: Callable[[], Awaitable[list]],
        worker: Callable[[Any], Awaitable[Any]],
        batch_size: int | None = None,
    ) -> BatchReport:
        """Run ``worker`` over the population, ``batch_size`` items at a time.

        Item failures are recorded in the report and never abort the run."""
        size = self.batch_size if batch_size is None else batch_size
        if size < 1:
            raise ValueError(f"batch_size must be at least 1, got {size}")
        report = BatchReport(started_at=self.clock())

        try:
            population = list(await population_fetcher())
        except Exception as e:
            logger.error(f"Fatal error fetching batch population: {e!r}")
            report.errors.append({
                "type": "fatal_error",
                "error": str(e),
                "timestamp": self.clock().isoformat(),
            })
            report.finished_at = self.clock()
            return report

        batches = [population[i:i + size] for i in range(0, len(population), size)]
        logger.info(f"Processing {len(population)} items in {len(batches)} batches of up to {size}")

        for index, batch in enumerate(batches):
            logger.info(f"Processing batch {index + 1}/{len(batches)} ({len(batch)} items)")
            report.batch_sizes.append(len(batch))
            outcomes = await asyncio.gather(*(self._run_item(item, worker) for item in batch))
            for ok, payload in outcomes:
                report.processed += 1
                if ok:
                    report.succeeded += 1
                    report.results.append(payload)
                else:
                    report.failed += 1
                    report.errors.append(payload)

            # Small delay between batches to be gentle on storage and the model API
            if index < len(batches) - 1 and self.delay_seconds > 0:
                await self._sleep(self.delay_seconds)

        report.finished_at = self.clock()
        self._log_report(report)
        return report

    async def _run_item(self, item, worker) -> tuple[bool, Any]:
        learner_id, name = _identity(item)
        try:
            return True, await worker(item)
        except Exception as e:
            logger.error(f"Error processing learner {name or learner_id}: {e!r}")
            return False, {
                "learner_id": learner_id,
                "learner_name": name,
                "error": str(e) or type(e).__name__,
                "timestamp": self.clock().isoformat(),
            }

    async def run_side_effect(self, errors: list[dict], label: str, side_effect: Awaitable) -> Any:
        """Await a best-effort side effect; a failure is logged and appended to ``errors``."""
        try:
            return await side_effect
        except Exception as e:
            logger.error(f"Side effect '{label}' failed: {e!r}")
            errors.append({
                "side_effect": label,
                "error": str(e) or type(e).__name__,
                "timestamp": self.clock().isoformat(),
            })
            return None

    def _log_report(self, report: BatchReport) -> None:
        logger.info(
            f"Batch run finished in {report.duration_seconds}s: {report.processed} processed, "
            f"{report.succeeded} succeeded, {report.failed} failed"
        )
        for i, error in enumerate(report.errors, 1):
            logger.warning(f"  {i}. {error.get('learner_name') or error.get('learner_id')}: {error['error']}")
