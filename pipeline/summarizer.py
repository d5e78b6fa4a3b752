"""Conversation summaries: ended conversations in, durable summaries out.

A group's raw messages are deleted only after its summary row is written. If
the insert raises, nothing is deleted and the messages are picked up again on
the next sweep.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from ai.parsing import parse_json_object, string_list
from ai.prompts import SESSION_SUMMARY_PROMPT, SESSION_SUMMARY_SYSTEM_PROMPT
from db.models import Models, from_db_time
from memory.grouping import ConversationGroup, group_into_sessions, summarizable_groups
from memory.session_store import Message, SessionStore
from pipeline.analysis import analyze_messages

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 6000
MIN_SUMMARY_CHARS = 20
MAX_SUMMARY_CHARS = 2000
PROGRESS_SIGNALS = ("improving", "steady", "struggling")


class CleanupError(Exception):
    """Raised after a learner's sweep when one or more groups could not be stored.

    ``result`` holds the counts for the groups that did succeed."""

    def __init__(self, message: str, result: dict | None = None) -> None:
        super().__init__(message)
        self.result = result or {}


@dataclass
class ConversationSummary:
    learner_id: str
    summary_text: str
    message_count: int
    period_start: datetime
    period_end: datetime
    created_at: datetime
    details: dict = field(default_factory=dict)
    source: str = "ai"  # 'ai' or 'fallback'
    summary_id: int | None = None


def message_from_row(row: dict) -> Message:
    metadata = row.get("metadata") or "{}"
    return Message(
        id=row["message_id"],
        role=row["role"],
        content=row["content"],
        timestamp=from_db_time(row["created_at"]),
        metadata=json.loads(metadata) if isinstance(metadata, str) else metadata,
    )


def build_transcript(messages: list[Message], max_chars: int = MAX_TRANSCRIPT_CHARS) -> str:
    lines = [f"{'Student' if m.role == 'user' else 'Tutor'}: {m.content}" for m in messages]
    text = "\n".join(lines)
    if len(text) > max_chars:
        text = text[:max_chars] + "\n[...conversation truncated]"
    return text


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _LearnerLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SummarizationEngine:
    def __init__(
        self,
        models: Models,
        claude,
        store: SessionStore | None = None,
        gap_hours: float = 4,
        min_messages: int = 5,
        recent_messages_limit: int = 50,
        cleanup_trigger_multiplier: float = 1.5,
        completion_timeout: float = 120.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.models = models
        self.claude = claude
        self.store = store
        self.gap_hours = gap_hours
        self.min_messages = min_messages
        self.recent_messages_limit = recent_messages_limit
        self.cleanup_trigger_multiplier = cleanup_trigger_multiplier
        self.completion_timeout = completion_timeout
        self.clock = clock
        self._learner_locks: dict[str, _LearnerLock] = {}

    # ── single conversation ──

    async def summarize(self, learner_id: str, group: ConversationGroup) -> ConversationSummary | None:
        """Summarize one conversation group, store it, then delete its raw messages."""
        if len(group.messages) < self.min_messages:
            logger.debug(
                f"Group for learner {learner_id} too short for summary ({len(group.messages)} messages)"
            )
            return None

        text, details, source = await self._generate(group)
        summary = ConversationSummary(
            learner_id=learner_id,
            summary_text=text,
            message_count=len(group.messages),
            period_start=group.start_time,
            period_end=group.end_time,
            created_at=self.clock(),
            details=details,
            source=source,
        )

        # Write first; an exception here leaves every raw message in place.
        summary.summary_id = await self.models.add_summary(
            learner_id=summary.learner_id,
            summary_text=summary.summary_text,
            message_count=summary.message_count,
            period_start=summary.period_start,
            period_end=summary.period_end,
            details=summary.details,
            source=summary.source,
            created_at=summary.created_at,
        )
        deleted = await self.models.delete_messages(group.message_ids)
        if deleted != len(group.messages):
            logger.warning(
                f"Deleted {deleted} of {len(group.messages)} messages for learner {learner_id} "
                f"after summary {summary.summary_id}"
            )
        logger.info(
            f"Summarized {summary.message_count} messages for learner {learner_id} "
            f"({source}, summary {summary.summary_id})"
        )
        return summary

    async def _generate(self, group: ConversationGroup) -> tuple[str, dict, str]:
        analysis = analyze_messages(group.messages)
        prompt = SESSION_SUMMARY_PROMPT.format(
            topics=", ".join(analysis["topics"]) or "none detected",
            message_count=analysis["message_count"],
            user_messages=analysis["user_messages"],
            transcript=build_transcript(group.messages),
        )
        try:
            raw = await asyncio.wait_for(
                self.claude.complete(SESSION_SUMMARY_SYSTEM_PROMPT, prompt, max_tokens=400, temperature=0.3),
                timeout=self.completion_timeout,
            )
            text, details = self._parse_summary(raw, analysis)
            return text, details, "ai"
        except Exception as e:
            logger.warning(f"AI summary unavailable, using fallback: {e!r}")
            text, details = self._fallback(analysis)
            return text, details, "fallback"

    def _parse_summary(self, raw: str, analysis: dict) -> tuple[str, dict]:
        data = parse_json_object(raw)
        text = str(data.get("summary") or "").strip()
        if len(text) < MIN_SUMMARY_CHARS:
            raise ValueError(f"Summary too short ({len(text)} chars)")
        if len(text) > MAX_SUMMARY_CHARS:
            raise ValueError(f"Summary too long ({len(text)} chars)")

        progress = str(data.get("progress") or "").strip().lower()
        if progress not in PROGRESS_SIGNALS:
            progress = "steady"
        details = {
            "topics": string_list(data.get("topics"), limit=5) or analysis["topics"],
            "struggles": string_list(data.get("struggles")),
            "breakthroughs": string_list(data.get("breakthroughs")),
            "assignments": string_list(data.get("assignments")),
            "progress": progress,
            "engagement_level": analysis["engagement_level"],
        }
        return text, details

    def _fallback(self, analysis: dict) -> tuple[str, dict]:
        topics = analysis["topics"]
        text = (
            f"Session covered {', '.join(topics) or 'general topics'} with "
            f"{analysis['engagement_level']} engagement. Student participated with "
            f"{analysis['user_messages']} of {analysis['message_count']} messages."
        )
        details = {
            "topics": topics,
            "struggles": [],
            "breakthroughs": [],
            "assignments": [],
            "progress": "steady",
            "engagement_level": analysis["engagement_level"],
        }
        return text, details

    # ── per learner ──

    @asynccontextmanager
    async def _lock(self, learner_id: str):
        """Serialize sweeps of one learner; the entry is dropped once nobody holds or awaits it."""
        entry = self._learner_locks.get(learner_id)
        if entry is None:
            entry = self._learner_locks[learner_id] = _LearnerLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._learner_locks.get(learner_id) is entry:
                del self._learner_locks[learner_id]

    async def summarize_learner(
        self, learner_id: str, keep_recent: int = 0, until: datetime | None = None
    ) -> dict:
        """Group a learner's raw messages and summarize each eligible group once.

        The newest ``keep_recent`` messages and anything after ``until`` are
        held back. Every group is attempted; CleanupError is raised afterwards
        if any of them failed."""
        async with self._lock(learner_id):
            rows = await self.models.get_messages(learner_id)
            messages = [message_from_row(r) for r in rows]
            if until is not None:
                messages = [m for m in messages if m.timestamp <= until]
            if keep_recent > 0:
                messages = messages[:-keep_recent]

            groups = group_into_sessions(messages, self.gap_hours)
            eligible = summarizable_groups(groups, self.min_messages)
            result = {
                "learner_id": learner_id,
                "groups": len(groups),
                "skipped": len(groups) - len(eligible),
                "summarized": 0,
                "messages_summarized": 0,
                "failed": 0,
            }
            errors = []
            for group in eligible:
                try:
                    summary = await self.summarize(learner_id, group)
                except Exception as e:
                    result["failed"] += 1
                    errors.append(str(e))
                    logger.error(f"Failed to summarize conversation for learner {learner_id}: {e!r}")
                    continue
                if summary is not None:
                    result["summarized"] += 1
                    result["messages_summarized"] += summary.message_count

        if errors:
            raise CleanupError(
                f"{result['failed']} of {len(eligible)} conversations failed: {'; '.join(errors)}",
                result,
            )
        return result

    async def cleanup_status(self, learner_id: str) -> dict:
        accounting = await self.models.get_message_accounting(learner_id)
        trigger = self.recent_messages_limit * self.cleanup_trigger_multiplier
        return {
            **accounting,
            "trigger_threshold": trigger,
            "needs_cleanup": accounting["current_messages"] > trigger,
        }

    async def cleanup_learner(self, learner_id: str, force: bool = False) -> dict:
        """Summarize a learner's older messages once they pile up past the trigger."""
        status = await self.cleanup_status(learner_id)
        logger.info(
            f"Learner {learner_id}: {status['current_messages']}/{status['trigger_threshold']:g} messages"
        )
        if not status["needs_cleanup"] and not force:
            return {"learner_id": learner_id, "action": "no_cleanup_needed", "summarized": 0}

        result = await self.summarize_learner(learner_id, keep_recent=self.recent_messages_limit)
        return {"action": "summarized", **result}

    async def flush_ended_sessions(self) -> dict:
        """Summarize conversations whose in-memory session has ended, then drop the session."""
        if self.store is None:
            return {"sessions": 0, "summaries_created": 0, "failed": 0}

        ready = self.store.sessions_ready_for_summary(idle_hours=self.gap_hours)
        created = failed = 0
        for session in ready:
            try:
                result = await self.summarize_learner(session.learner_id, until=session.last_activity_at)
            except CleanupError as e:
                failed += 1
                created += e.result.get("summarized", 0)
                logger.error(f"Error generating summary for session {session.id}: {e!r}")
                continue
            except Exception as e:
                failed += 1
                logger.error(f"Error generating summary for session {session.id}: {e!r}")
                continue
            created += result["summarized"]
            await self.store.discard(session.id)

        if ready:
            logger.info(f"Flushed {len(ready)} ended sessions into {created} summaries")
        return {"sessions": len(ready), "summaries_created": created, "failed": failed}
