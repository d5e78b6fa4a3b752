"""Entry points for the external scheduler: batch cleanup, daily digests, daily maintenance."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from ai.claude_client import ClaudeClient
from config import Config
from db.database import Database, create_database
from db.models import Models
from memory.session_store import SessionStore
from pipeline.batch import BatchOrchestrator
from pipeline.digest import DailyDigestGenerator
from pipeline.retention import RetentionSweeper
from pipeline.summarizer import CleanupError, SummarizationEngine

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Services:
    db: Database
    models: Models
    store: SessionStore
    claude: object
    engine: SummarizationEngine
    sweeper: RetentionSweeper
    digests: DailyDigestGenerator
    orchestrator: BatchOrchestrator
    jobs: "MaintenanceJobs"


def build_services(
    cfg: Config,
    db: Database,
    claude,
    clock: Callable[[], datetime] = _utcnow,
    store: SessionStore | None = None,
) -> Services:
    """Wire every component around one database and one session store."""
    models = Models(db)
    store = store or SessionStore(
        max_messages=cfg.max_messages_per_session,
        expiry_hours=cfg.session_expiry_hours,
        min_messages_for_summary=cfg.min_messages_for_summary,
        clock=clock,
    )
    orchestrator = BatchOrchestrator(
        batch_size=cfg.batch_size, delay_seconds=cfg.batch_delay_seconds, clock=clock
    )
    # Allow for the client's own retries on top of the per-call timeout.
    completion_budget = cfg.completion_timeout_seconds * 4
    engine = SummarizationEngine(
        models,
        claude,
        store=store,
        gap_hours=cfg.session_gap_hours,
        min_messages=cfg.min_messages_for_summary,
        recent_messages_limit=cfg.recent_messages_limit,
        cleanup_trigger_multiplier=cfg.cleanup_trigger_multiplier,
        completion_timeout=completion_budget,
        clock=clock,
    )
    sweeper = RetentionSweeper(models, summary_retention_days=cfg.summary_retention_days, clock=clock)
    digests = DailyDigestGenerator(
        models,
        claude,
        orchestrator=orchestrator,
        min_total_messages=cfg.min_total_messages,
        min_conversations=cfg.min_conversations_for_summary,
        notification_expiry_days=cfg.notification_expiry_days,
        completion_timeout=completion_budget,
        clock=clock,
    )
    jobs = MaintenanceJobs(
        models, store, engine, sweeper, digests, orchestrator,
        active_learner_days=cfg.active_learner_days, clock=clock,
    )
    return Services(db, models, store, claude, engine, sweeper, digests, orchestrator, jobs)


async def create_services(cfg: Config) -> Services:
    """Validate configuration, then open the database and the model client.

    A configuration error raises before anything is touched."""
    cfg.validate()
    db = create_database(cfg.database_url, cfg.database_path)
    await db.init()
    claude = ClaudeClient(cfg.anthropic_api_key, cfg.claude_model, timeout=cfg.completion_timeout_seconds)
    return build_services(cfg, db, claude)


class MaintenanceJobs:
    def __init__(
        self,
        models: Models,
        store: SessionStore,
        engine: SummarizationEngine,
        sweeper: RetentionSweeper,
        digests: DailyDigestGenerator,
        orchestrator: BatchOrchestrator,
        active_learner_days: int = 7,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.models = models
        self.store = store
        self.engine = engine
        self.sweeper = sweeper
        self.digests = digests
        self.orchestrator = orchestrator
        self.active_learner_days = active_learner_days
        self.clock = clock

    async def sweep_sessions(self) -> int:
        return await self.store.expire_sweep()

    async def run_batch_cleanup(self, batch_size: int | None = None) -> dict:
        """Summarize and clean up raw messages for every recently active learner."""
        logger.info("Starting batch chat message cleanup")

        async def fetch() -> list[dict]:
            since = self.clock() - timedelta(days=self.active_learner_days)
            return await self.models.get_active_learners(since)

        # Summaries written before a learner's run failed still count.
        partial_summaries = 0

        async def worker(learner: dict) -> dict:
            nonlocal partial_summaries
            try:
                result = await self.engine.cleanup_learner(learner["learner_id"])
            except CleanupError as e:
                partial_summaries += e.result.get("summarized", 0)
                raise
            if result["action"] == "summarized":
                result["summaries_purged"] = await self.sweeper.purge_expired_summaries(learner["learner_id"])
            return result

        report = await self.orchestrator.run_batch(fetch, worker, batch_size)
        summaries_created = sum(r.get("summarized", 0) for r in report.results) + partial_summaries

        await self.orchestrator.run_side_effect(
            report.side_effect_errors,
            "save_cleanup_report",
            self.models.add_cleanup_report(
                job_name="batch_cleanup",
                started_at=report.started_at,
                duration_seconds=report.duration_seconds,
                processed=report.processed,
                succeeded=report.succeeded,
                failed=report.failed,
                summaries_created=summaries_created,
                errors=report.errors,
            ),
        )
        logger.info(f"Batch cleanup created {summaries_created} summaries")
        return {**report.to_dict(), "summaries_created": summaries_created}

    async def generate_daily_summaries(self, target_date: date | None = None) -> dict:
        """Parent digests for ``target_date`` (yesterday by default), then purge expired ones."""
        day = target_date or (self.clock() - timedelta(days=1)).date()
        result = await self.digests.generate_for_date(day)
        if result["digests_generated"] == 0 and result["total_learners"] > 0:
            logger.warning(f"{result['total_learners']} learners had conversations but no digest was stored")
        result["expired_notifications_removed"] = await self.orchestrator.run_side_effect(
            result["side_effect_errors"],
            "purge_expired_notifications",
            self.sweeper.purge_expired_notifications(),
        )
        return result

    async def run_daily_maintenance(self) -> dict:
        """Flush ended sessions, clean up, digest yesterday, purge old summaries.

        Each step runs even if an earlier one failed."""
        started = self.clock()
        results: dict = {"errors": []}
        steps = [
            ("flush_sessions", self.engine.flush_ended_sessions),
            ("batch_cleanup", self.run_batch_cleanup),
            ("parent_summaries", self.generate_daily_summaries),
            ("purge_summaries", self.sweeper.purge_expired_summaries),
        ]
        for name, step in steps:
            logger.info(f"Daily maintenance step: {name}")
            try:
                results[name] = await step()
            except Exception as e:
                logger.error(f"Daily maintenance step {name} failed: {e!r}")
                results[name] = None
                results["errors"].append({"step": name, "error": str(e) or type(e).__name__})

        finished = self.clock()
        results["started_at"] = started.isoformat()
        results["finished_at"] = finished.isoformat()
        results["duration_seconds"] = round((finished - started).total_seconds(), 3)
        logger.info(
            f"Daily maintenance complete in {results['duration_seconds']}s "
            f"with {len(results['errors'])} errors"
        )
        return results
