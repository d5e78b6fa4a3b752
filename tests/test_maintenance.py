"""End-to-end runs of the scheduled jobs against a SQLite database."""

import asyncio
import json
from datetime import timedelta

from ai.conversation import ConversationManager
from config import Config
from jobs.maintenance import build_services

from conftest import T0, FakeClaude

SUMMARY_JSON = json.dumps({
    "summary": "Explored how plants turn sunlight into food and drew a diagram.",
    "topics": ["Science"],
    "progress": "steady",
})
DIGEST_JSON = json.dumps({
    "keyHighlights": ["Learned about photosynthesis"],
    "subjectsDiscussed": ["Science"],
    "learningProgress": {"problemsSolved": 2, "engagementLevel": "medium"},
    "parentSuggestions": ["Grow a bean plant on the windowsill"],
})


def _config(**overrides) -> Config:
    settings = {"anthropic_api_key": "sk-test", "batch_delay_seconds": 0}
    settings.update(overrides)
    return Config(**settings)


async def _chat(manager: ConversationManager, clock, learner_id: str, turns: int) -> None:
    for i in range(turns):
        clock.advance(minutes=2)
        await manager.add_user_message(learner_id, f"Question {i} about how a plant grows")
        clock.advance(seconds=30)
        await manager.add_assistant_message(learner_id, "Plants use light, water and carbon dioxide.")


def test_daily_maintenance_summarizes_and_notifies(db, clock) -> None:
    claude = FakeClaude(SUMMARY_JSON, SUMMARY_JSON, DIGEST_JSON)
    services = build_services(_config(), db, claude, clock=clock)
    manager = ConversationManager(services.models, services.store)

    async def scenario():
        await services.models.get_or_create_learner("kid-1", guardian_id="parent-1", name="Ada")
        await _chat(manager, clock, "kid-1", turns=3)
        clock.advance(hours=6)
        await _chat(manager, clock, "kid-1", turns=3)
        # The next night, after the conversation went idle.
        clock.now = T0.replace(hour=2) + timedelta(days=1)
        result = await services.jobs.run_daily_maintenance()
        notifications = await services.models.get_notifications("kid-1")
        accounting = await services.models.get_message_accounting("kid-1")
        return result, notifications, accounting

    result, notifications, accounting = asyncio.run(scenario())
    assert result["errors"] == []
    assert result["flush_sessions"] == {"sessions": 1, "summaries_created": 2, "failed": 0}
    assert result["batch_cleanup"]["processed"] == 0
    assert result["parent_summaries"]["digests_generated"] == 1
    assert result["parent_summaries"]["ai_digests"] == 1
    assert result["purge_summaries"] == 0

    assert len(notifications) == 1
    assert notifications[0]["conversation_date"] == "2025-03-10"
    assert notifications[0]["summary_data"]["keyHighlights"] == ["Learned about photosynthesis"]
    assert accounting == {"current_messages": 0, "summarized_messages": 12, "total_messages": 12}
    assert services.store.get("kid-1") is None


def test_batch_cleanup_writes_report(db, clock) -> None:
    claude = FakeClaude()
    claude.default = SUMMARY_JSON
    services = build_services(_config(recent_messages_limit=4), db, claude, clock=clock)
    manager = ConversationManager(services.models, services.store)

    async def scenario():
        for learner_id in ("kid-1", "kid-2"):
            await services.models.get_or_create_learner(learner_id, guardian_id="parent-1")
            await _chat(manager, clock, learner_id, turns=6)
        result = await services.jobs.run_batch_cleanup()
        report = await services.models.get_latest_cleanup_report("batch_cleanup")
        return result, report

    result, report = asyncio.run(scenario())
    assert result["processed"] == 2
    assert result["succeeded"] == 2
    assert result["summaries_created"] == 2
    assert result["side_effect_errors"] == []
    assert report["summaries_created"] == 2
    assert report["failed"] == 0
    assert json.loads(report["errors"]) == []


def test_report_save_failure_is_reported_not_raised(db, clock, monkeypatch) -> None:
    services = build_services(_config(), db, FakeClaude(), clock=clock)

    async def broken_save(**kwargs):
        raise RuntimeError("cleanup_reports is read-only")

    monkeypatch.setattr(services.models, "add_cleanup_report", broken_save)
    result = asyncio.run(services.jobs.run_batch_cleanup())
    assert result["processed"] == 0
    assert result["side_effect_errors"][0]["side_effect"] == "save_cleanup_report"


def test_failed_step_does_not_stop_the_others(db, clock, monkeypatch) -> None:
    services = build_services(_config(), db, FakeClaude(), clock=clock)

    async def broken_flush():
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(services.engine, "flush_ended_sessions", broken_flush)
    result = asyncio.run(services.jobs.run_daily_maintenance())
    assert result["errors"] == [{"step": "flush_sessions", "error": "store unavailable"}]
    assert result["flush_sessions"] is None
    assert result["batch_cleanup"]["processed"] == 0
    assert result["parent_summaries"]["date"] == "2025-03-09"
    assert result["purge_summaries"] == 0


def test_session_sweep_job(db, clock) -> None:
    services = build_services(_config(), db, FakeClaude(), clock=clock)

    async def scenario():
        await services.store.get_or_create("kid-1")
        clock.advance(hours=25)
        return await services.jobs.sweep_sessions()

    assert asyncio.run(scenario()) == 1


def test_notification_purge_failure_keeps_digest_result(db, clock, monkeypatch) -> None:
    services = build_services(_config(), db, FakeClaude(), clock=clock)

    async def broken_purge():
        raise RuntimeError("parent_notifications locked")

    monkeypatch.setattr(services.sweeper, "purge_expired_notifications", broken_purge)
    result = asyncio.run(services.jobs.generate_daily_summaries())
    assert result["date"] == "2025-03-09"
    assert result["expired_notifications_removed"] is None
    assert result["side_effect_errors"][0]["side_effect"] == "purge_expired_notifications"
    assert result["side_effect_errors"][0]["error"] == "parent_notifications locked"


def test_batch_cleanup_counts_summaries_from_failed_learners(db, clock, monkeypatch) -> None:
    claude = FakeClaude()
    claude.default = SUMMARY_JSON
    services = build_services(
        _config(recent_messages_limit=1, cleanup_trigger_multiplier=1), db, claude, clock=clock
    )
    original = services.models.add_summary
    inserts = []

    async def second_insert_fails(**kwargs):
        inserts.append(kwargs["learner_id"])
        if len(inserts) == 2:
            raise RuntimeError("connection reset")
        return await original(**kwargs)

    async def scenario():
        await services.models.get_or_create_learner("kid-1", guardian_id="parent-1")
        # Six messages, a six hour gap, then seven; the newest one is held back.
        offsets = [timedelta(minutes=i) for i in range(6)] + [timedelta(hours=6, minutes=i) for i in range(7)]
        for i, offset in enumerate(offsets):
            await services.models.add_message(
                message_id=f"m{i:02d}",
                learner_id="kid-1",
                role="user" if i % 2 == 0 else "assistant",
                content="How do seeds sprout?",
                created_at=T0 + offset,
            )
        clock.now = T0 + timedelta(hours=7)
        monkeypatch.setattr(services.models, "add_summary", second_insert_fails)
        return await services.jobs.run_batch_cleanup()

    result = asyncio.run(scenario())
    assert result["processed"] == 1
    assert result["failed"] == 1
    assert result["summaries_created"] == 1
    assert "connection reset" in result["errors"][0]["error"]
