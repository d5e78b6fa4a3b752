"""Time-boxed deletion of summaries and parent notifications.

Delete-only: safe to repeat, and safe to run while digests are generated.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from db.models import Models

logger = logging.getLogger(__name__)

SUMMARY_RETENTION_DAYS = 90


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetentionSweeper:
    def __init__(
        self,
        models: Models,
        summary_retention_days: int = SUMMARY_RETENTION_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.models = models
        self.summary_retention = timedelta(days=summary_retention_days)
        self.clock = clock

    async def purge_expired_summaries(self, learner_id: str | None = None) -> int:
        cutoff = self.clock() - self.summary_retention
        count = await self.models.delete_summaries_created_before(cutoff, learner_id)
        if count:
            scope = f"learner {learner_id}" if learner_id else "all learners"
            logger.info(f"Deleted {count} summaries older than {cutoff.date()} ({scope})")
        return count

    async def purge_expired_notifications(self) -> int:
        count = await self.models.delete_notifications_expired_before(self.clock())
        logger.info(f"Cleaned up {count} expired parent notifications")
        return count
