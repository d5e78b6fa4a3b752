"""Daily parent digests built from a day's conversation summaries.

Per learner and date: no activity -> aggregated -> summarized (AI or fallback)
-> stored. Storing is an upsert on (guardian, learner, date), so running the
same date twice leaves one notification holding the latest digest.
"""

import asyncio
import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from ai.parsing import parse_json_object, string_list
from ai.prompts import DAILY_DIGEST_PROMPT, DAILY_DIGEST_SYSTEM_PROMPT
from db.models import Models, from_db_time
from pipeline.analysis import daily_engagement_level, detect_topics
from pipeline.batch import BatchOrchestrator

logger = logging.getLogger(__name__)

MIN_TOTAL_MESSAGES = 6
MIN_CONVERSATIONS_FOR_SUMMARY = 2
NOTIFICATION_EXPIRY_DAYS = 7
ENGAGEMENT_LEVELS = ("high", "medium", "low")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DailyDigestGenerator:
    def __init__(
        self,
        models: Models,
        claude,
        orchestrator: BatchOrchestrator | None = None,
        min_total_messages: int = MIN_TOTAL_MESSAGES,
        min_conversations: int = MIN_CONVERSATIONS_FOR_SUMMARY,
        notification_expiry_days: int = NOTIFICATION_EXPIRY_DAYS,
        completion_timeout: float = 120.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.models = models
        self.claude = claude
        self.orchestrator = orchestrator or BatchOrchestrator(clock=clock)
        self.min_total_messages = min_total_messages
        self.min_conversations = min_conversations
        self.notification_expiry = timedelta(days=notification_expiry_days)
        self.completion_timeout = completion_timeout
        self.clock = clock

    async def generate_for_date(self, day: date) -> dict:
        """Generate and store digests for every eligible learner on ``day``.

        Failures are counted, never raised. A failure while loading the day's
        summaries is reported as a ``fatal_error`` entry with no learners."""
        logger.info(f"Generating parent digests for {day.isoformat()}")

        async def fetch() -> list[dict]:
            learners = await self.learners_with_conversations(day)
            logger.info(f"Found {len(learners)} learners with conversations on {day.isoformat()}")
            return learners

        async def worker(learner: dict) -> dict:
            digest = await self.build_digest(learner, day)
            await self.store_notification(learner, day, digest)
            logger.info(f"Stored {digest['generatedBy']} digest for {learner['name']} ({learner['learner_id']})")
            return {"learner_id": learner["learner_id"], "source": digest["generatedBy"]}

        report = await self.orchestrator.run_batch(fetch, worker)
        sources = [r["source"] for r in report.results]
        return {
            "date": day.isoformat(),
            "total_learners": report.processed,
            "digests_generated": report.succeeded,
            "ai_digests": sources.count("ai"),
            "fallback_digests": sources.count("fallback"),
            "failed": report.failed,
            "errors": report.errors,
            "side_effect_errors": report.side_effect_errors,
        }

    async def learners_with_conversations(self, day: date) -> list[dict]:
        """Aggregate the day's summaries per learner and keep the meaningful ones."""
        rows = await self.models.get_summaries_started_on(day)
        learners: dict[str, dict] = {}
        for row in rows:
            learner = learners.setdefault(row["learner_id"], {
                "learner_id": row["learner_id"],
                "name": row["name"] or row["learner_id"],
                "guardian_id": row["guardian_id"],
                "summaries": [],
                "total_messages": 0,
                "session_count": 0,
                "active_minutes": 0.0,
                "struggles": [],
                "breakthroughs": [],
                "topics": [],
            })
            learner["summaries"].append(row["summary_text"])
            learner["total_messages"] += row["message_count"]
            learner["session_count"] += 1
            span = from_db_time(row["period_end"]) - from_db_time(row["period_start"])
            learner["active_minutes"] += span.total_seconds() / 60

            try:
                details = json.loads(row.get("details") or "{}")
            except json.JSONDecodeError:
                details = {}
            for key, target in (("topics", "topics"), ("struggles", "struggles"), ("breakthroughs", "breakthroughs")):
                for item in details.get(key) or []:
                    if item not in learner[target]:
                        learner[target].append(item)

        return [
            learner for learner in learners.values()
            if learner["total_messages"] >= self.min_total_messages
            and learner["session_count"] >= self.min_conversations
        ]

    def engagement_level(self, learner: dict) -> str:
        return daily_engagement_level(
            learner["total_messages"], learner["session_count"], learner["active_minutes"]
        )

    async def build_digest(self, learner: dict, day: date) -> dict:
        """Ask the model for the fixed-shape digest; fall back to a computed one."""
        prompt = DAILY_DIGEST_PROMPT.format(
            learner_name=learner["name"],
            date=day.isoformat(),
            summaries="\n\n".join(learner["summaries"]),
            session_count=learner["session_count"],
            message_count=learner["total_messages"],
        )
        try:
            raw = await asyncio.wait_for(
                self.claude.complete(DAILY_DIGEST_SYSTEM_PROMPT, prompt, max_tokens=500, temperature=0.3),
                timeout=self.completion_timeout,
            )
            digest = self._normalize(parse_json_object(raw), learner)
            digest["generatedBy"] = "ai"
        except Exception as e:
            logger.warning(f"AI digest unavailable for learner {learner['learner_id']}, using fallback: {e!r}")
            digest = self.fallback_digest(learner)
            digest["fallbackReason"] = str(e) or type(e).__name__

        digest.update({
            "learnerName": learner["name"],
            "conversationDate": day.isoformat(),
            "sessionCount": learner["session_count"],
            "totalMessages": learner["total_messages"],
            "totalMinutes": round(learner["active_minutes"]),
            "engagementLevel": self.engagement_level(learner),
        })
        return digest

    def _normalize(self, data: dict, learner: dict) -> dict:
        """Coerce the model's answer into the fixed shape or raise ValueError."""
        highlights = string_list(data.get("keyHighlights"), limit=5)
        if not highlights:
            raise ValueError("Digest has no keyHighlights")

        progress = data.get("learningProgress") or {}
        if not isinstance(progress, dict):
            raise ValueError("learningProgress is not an object")
        try:
            problems = max(0, int(progress.get("problemsSolved") or 0))
        except (TypeError, ValueError):
            problems = 0
        engagement = str(progress.get("engagementLevel") or "").lower()
        if engagement not in ENGAGEMENT_LEVELS:
            engagement = self.engagement_level(learner)

        return {
            "keyHighlights": highlights,
            "subjectsDiscussed": string_list(data.get("subjectsDiscussed")) or learner["topics"] or ["General Learning"],
            "learningProgress": {
                "problemsSolved": problems,
                "engagementLevel": engagement,
                "struggledWith": string_list(progress.get("struggledWith")),
                "masteredTopics": string_list(progress.get("masteredTopics")),
            },
            "parentSuggestions": string_list(data.get("parentSuggestions"), limit=3),
        }

    def fallback_digest(self, learner: dict) -> dict:
        topics = learner["topics"] or detect_topics(learner["summaries"])
        highlights = [
            f"📚 Had {learner['session_count']} learning sessions",
            f"💬 {learner['total_messages']} messages exchanged",
        ]
        if topics:
            highlights.append(f"🧮 Worked on {', '.join(topics[:3])}")
        else:
            highlights.append("📖 Focused on discussion and guidance")

        return {
            "keyHighlights": highlights,
            "subjectsDiscussed": topics or ["General Learning"],
            "learningProgress": {
                "problemsSolved": 0,
                "engagementLevel": self.engagement_level(learner),
                "struggledWith": learner["struggles"][:5],
                "masteredTopics": learner["breakthroughs"][:5],
            },
            "parentSuggestions": [
                "Check in with your child about today's learning",
                "Ask about any challenging topics they worked on",
            ],
            "generatedBy": "fallback",
        }

    async def store_notification(self, learner: dict, day: date, digest: dict) -> None:
        now = self.clock()
        await self.models.upsert_notification(
            guardian_id=learner["guardian_id"],
            learner_id=learner["learner_id"],
            conversation_date=day,
            summary_data=digest,
            expires_at=now + self.notification_expiry,
            now=now,
        )
