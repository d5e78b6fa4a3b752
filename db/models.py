import json
from datetime import date, datetime, timedelta, timezone

from db.database import Database

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC text so lexical order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_db_time(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _day_bounds(day: date) -> tuple[str, str]:
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return to_db_time(start), to_db_time(start + timedelta(days=1))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Models:
    def __init__(self, db: Database) -> None:
        self.db = db

    # ── learners ──

    async def get_or_create_learner(self, learner_id: str, guardian_id: str, name: str = "") -> dict:
        row = await self.db.fetchone("SELECT * FROM learners WHERE learner_id = ?", (learner_id,))
        if row:
            return row
        await self.db.execute_write(
            "INSERT INTO learners (learner_id, name, guardian_id, created_at) VALUES (?, ?, ?, ?)",
            (learner_id, name, guardian_id, to_db_time(utcnow())),
        )
        return await self.db.fetchone("SELECT * FROM learners WHERE learner_id = ?", (learner_id,))

    async def get_learner(self, learner_id: str) -> dict | None:
        return await self.db.fetchone("SELECT * FROM learners WHERE learner_id = ?", (learner_id,))

    async def get_active_learners(self, since: datetime) -> list[dict]:
        """Learners with at least one raw chat message since the cutoff."""
        return await self.db.fetchall(
            """SELECT l.learner_id, l.name, l.guardian_id FROM learners l
               WHERE EXISTS (
                   SELECT 1 FROM chat_messages m
                   WHERE m.learner_id = l.learner_id AND m.created_at >= ?
               )
               ORDER BY l.learner_id""",
            (to_db_time(since),),
        )

    # ── chat_messages ──

    async def add_message(
        self,
        message_id: str,
        learner_id: str,
        role: str,
        content: str,
        created_at: datetime,
        metadata: dict | None = None,
    ) -> None:
        await self.db.execute_write(
            """INSERT INTO chat_messages (message_id, learner_id, role, content, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                message_id,
                learner_id,
                role,
                content,
                json.dumps(metadata or {}, ensure_ascii=False, default=str),
                to_db_time(created_at),
            ),
        )

    async def get_messages(self, learner_id: str) -> list[dict]:
        """All raw messages for a learner, oldest first."""
        return await self.db.fetchall(
            "SELECT * FROM chat_messages WHERE learner_id = ? ORDER BY created_at ASC, message_id ASC",
            (learner_id,),
        )

    async def count_messages(self, learner_id: str) -> int:
        row = await self.db.fetchone(
            "SELECT COUNT(*) as cnt FROM chat_messages WHERE learner_id = ?", (learner_id,)
        )
        return row["cnt"] if row else 0

    async def delete_messages(self, message_ids: list[str]) -> int:
        if not message_ids:
            return 0
        placeholders = ",".join("?" * len(message_ids))
        return await self.db.execute_delete(
            f"DELETE FROM chat_messages WHERE message_id IN ({placeholders})",
            tuple(message_ids),
        )

    # ── conversation_summaries ──

    async def add_summary(
        self,
        learner_id: str,
        summary_text: str,
        message_count: int,
        period_start: datetime,
        period_end: datetime,
        details: dict,
        source: str,
        created_at: datetime,
    ) -> int:
        return await self.db.execute_write(
            """INSERT INTO conversation_summaries
               (learner_id, summary_text, message_count, period_start, period_end,
                details, source, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?) RETURNING summary_id""",
            (
                learner_id,
                summary_text,
                message_count,
                to_db_time(period_start),
                to_db_time(period_end),
                json.dumps(details, ensure_ascii=False),
                source,
                to_db_time(created_at),
            ),
        )

    async def get_summaries(self, learner_id: str, limit: int = 30) -> list[dict]:
        return await self.db.fetchall(
            """SELECT * FROM conversation_summaries WHERE learner_id = ?
               ORDER BY period_start DESC LIMIT ?""",
            (learner_id, limit),
        )

    async def get_summaries_started_on(self, day: date) -> list[dict]:
        """Summaries whose period_start falls on the given UTC date, with learner info."""
        start, end = _day_bounds(day)
        return await self.db.fetchall(
            """SELECT s.learner_id, s.summary_text, s.message_count, s.period_start,
                      s.period_end, s.details, l.name, l.guardian_id
               FROM conversation_summaries s
               JOIN learners l ON s.learner_id = l.learner_id
               WHERE s.period_start >= ? AND s.period_start < ?
               ORDER BY s.learner_id, s.period_start""",
            (start, end),
        )

    async def summarized_message_count(self, learner_id: str) -> int:
        row = await self.db.fetchone(
            "SELECT COALESCE(SUM(message_count), 0) as total FROM conversation_summaries WHERE learner_id = ?",
            (learner_id,),
        )
        return row["total"] if row else 0

    async def delete_summaries_created_before(self, cutoff: datetime, learner_id: str | None = None) -> int:
        if learner_id is None:
            return await self.db.execute_delete(
                "DELETE FROM conversation_summaries WHERE created_at < ?",
                (to_db_time(cutoff),),
            )
        return await self.db.execute_delete(
            "DELETE FROM conversation_summaries WHERE learner_id = ? AND created_at < ?",
            (learner_id, to_db_time(cutoff)),
        )

    # ── parent_notifications ──

    async def upsert_notification(
        self,
        guardian_id: str,
        learner_id: str,
        conversation_date: date,
        summary_data: dict,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        """Insert with a fresh expiry, or replace summary_data for an existing key.

        An update keeps the original expiry and read status."""
        await self.db.execute_write(
            """INSERT INTO parent_notifications
               (guardian_id, learner_id, conversation_date, summary_data, status,
                expires_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, 'unread', ?, ?, ?)
               ON CONFLICT (guardian_id, learner_id, conversation_date)
               DO UPDATE SET summary_data = excluded.summary_data, updated_at = excluded.updated_at""",
            (
                guardian_id,
                learner_id,
                conversation_date.isoformat(),
                json.dumps(summary_data, ensure_ascii=False),
                to_db_time(expires_at),
                to_db_time(now),
                to_db_time(now),
            ),
        )

    async def get_notifications(
        self, learner_id: str, start: date | None = None, end: date | None = None
    ) -> list[dict]:
        """Notifications for a learner, optionally limited to an inclusive date range."""
        sql = "SELECT * FROM parent_notifications WHERE learner_id = ?"
        params: list = [learner_id]
        if start:
            sql += " AND conversation_date >= ?"
            params.append(start.isoformat())
        if end:
            sql += " AND conversation_date <= ?"
            params.append(end.isoformat())
        rows = await self.db.fetchall(sql + " ORDER BY conversation_date DESC", tuple(params))
        for row in rows:
            row["summary_data"] = json.loads(row["summary_data"])
        return rows

    async def mark_notification_read(self, notification_id: int) -> None:
        await self.db.execute_write(
            "UPDATE parent_notifications SET status = 'read' WHERE notification_id = ?",
            (notification_id,),
        )

    async def delete_notifications_expired_before(self, now: datetime) -> int:
        return await self.db.execute_delete(
            "DELETE FROM parent_notifications WHERE expires_at < ?",
            (to_db_time(now),),
        )

    # ── cleanup_reports ──

    async def add_cleanup_report(
        self,
        job_name: str,
        started_at: datetime,
        duration_seconds: float,
        processed: int,
        succeeded: int,
        failed: int,
        summaries_created: int,
        errors: list,
    ) -> int:
        return await self.db.execute_write(
            """INSERT INTO cleanup_reports
               (job_name, started_at, duration_seconds, processed, succeeded, failed,
                summaries_created, errors, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) RETURNING report_id""",
            (
                job_name,
                to_db_time(started_at),
                duration_seconds,
                processed,
                succeeded,
                failed,
                summaries_created,
                json.dumps(errors, ensure_ascii=False, default=str),
                to_db_time(utcnow()),
            ),
        )

    async def get_latest_cleanup_report(self, job_name: str) -> dict | None:
        return await self.db.fetchone(
            "SELECT * FROM cleanup_reports WHERE job_name = ? ORDER BY report_id DESC LIMIT 1",
            (job_name,),
        )

    # ── utility ──

    async def get_message_accounting(self, learner_id: str) -> dict:
        """Raw + summarized counts; their sum is the learner's lifetime message count."""
        current = await self.count_messages(learner_id)
        summarized = await self.summarized_message_count(learner_id)
        return {
            "current_messages": current,
            "summarized_messages": summarized,
            "total_messages": current + summarized,
        }
