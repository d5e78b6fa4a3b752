"""Tests for conversation summarization and raw-message cleanup."""

import asyncio
import json
from datetime import timedelta

import pytest

from ai.conversation import ConversationManager
from memory.session_store import SessionStore
from pipeline.summarizer import CleanupError, SummarizationEngine, build_transcript, message_from_row

from conftest import T0, FakeClaude

SUMMARY_JSON = json.dumps({
    "summary": "Practised adding fractions with unlike denominators and got most right.",
    "topics": ["Math"],
    "struggles": ["common denominators"],
    "breakthroughs": ["simplifying results"],
    "assignments": [],
    "progress": "Improving",
})


async def _seed(models, learner_id: str = "kid-1", offsets=None) -> None:
    """Three messages, a six hour gap, then nine more."""
    if offsets is None:
        offsets = [timedelta(minutes=i) for i in range(3)] + [timedelta(hours=6, minutes=i) for i in range(9)]
    await models.get_or_create_learner(learner_id, guardian_id="parent-1", name="Ada")
    for i, offset in enumerate(offsets):
        await models.add_message(
            message_id=f"{learner_id}-m{i:02d}",
            learner_id=learner_id,
            role="user" if i % 2 == 0 else "assistant",
            content=f"What is 1/{i + 2} plus 1/{i + 3}? Let's work on this fraction together.",
            created_at=T0 + offset,
        )


def _engine(models, claude, clock, **kwargs) -> SummarizationEngine:
    return SummarizationEngine(models, claude, clock=clock, **kwargs)


def test_only_long_enough_conversation_is_summarized(models, clock) -> None:
    claude = FakeClaude(SUMMARY_JSON)
    engine = _engine(models, claude, clock)

    async def scenario():
        await _seed(models)
        result = await engine.summarize_learner("kid-1")
        remaining = await models.get_messages("kid-1")
        summaries = await models.get_summaries("kid-1")
        accounting = await models.get_message_accounting("kid-1")
        return result, remaining, summaries, accounting

    result, remaining, summaries, accounting = asyncio.run(scenario())
    assert result["groups"] == 2
    assert result["skipped"] == 1
    assert result["summarized"] == 1
    assert result["messages_summarized"] == 9
    assert [r["message_id"] for r in remaining] == ["kid-1-m00", "kid-1-m01", "kid-1-m02"]

    assert len(summaries) == 1
    summary = summaries[0]
    assert summary["message_count"] == 9
    assert summary["source"] == "ai"
    assert summary["period_start"] == "2025-03-10T15:00:00.000000Z"
    assert summary["period_end"] == "2025-03-10T15:08:00.000000Z"
    details = json.loads(summary["details"])
    assert details["progress"] == "improving"
    assert details["struggles"] == ["common denominators"]

    assert accounting == {"current_messages": 3, "summarized_messages": 9, "total_messages": 12}


def test_failed_summary_write_keeps_raw_messages(models, clock, monkeypatch) -> None:
    engine = _engine(models, FakeClaude(SUMMARY_JSON), clock)

    async def broken_insert(**kwargs):
        raise RuntimeError("disk full")

    async def scenario():
        await _seed(models)
        monkeypatch.setattr(models, "add_summary", broken_insert)
        with pytest.raises(CleanupError, match="disk full"):
            await engine.summarize_learner("kid-1")
        return await models.count_messages("kid-1")

    assert asyncio.run(scenario()) == 12


def test_service_error_falls_back_to_deterministic_summary(models, clock) -> None:
    engine = _engine(models, FakeClaude(RuntimeError("overloaded")), clock)

    async def scenario():
        await _seed(models)
        await engine.summarize_learner("kid-1")
        return await models.get_summaries("kid-1")

    summaries = asyncio.run(scenario())
    assert summaries[0]["source"] == "fallback"
    assert summaries[0]["summary_text"].startswith("Session covered Math")
    assert summaries[0]["message_count"] == 9


def test_service_timeout_falls_back(models, clock) -> None:
    engine = _engine(models, FakeClaude("hang"), clock, completion_timeout=0.05)

    async def scenario():
        await _seed(models)
        await engine.summarize_learner("kid-1")
        return await models.get_summaries("kid-1")

    assert asyncio.run(scenario())[0]["source"] == "fallback"


@pytest.mark.parametrize("response", [
    "I'm sorry, I can't help with that.",
    json.dumps({"summary": "too short"}),
    json.dumps(["not", "an", "object"]),
])
def test_unusable_model_output_falls_back(models, clock, response) -> None:
    engine = _engine(models, FakeClaude(response), clock)

    async def scenario():
        await _seed(models)
        await engine.summarize_learner("kid-1")
        return await models.get_summaries("kid-1")

    assert asyncio.run(scenario())[0]["source"] == "fallback"


def test_fenced_model_output_is_accepted(models, clock) -> None:
    engine = _engine(models, FakeClaude(f"```json\n{SUMMARY_JSON}\n```"), clock)

    async def scenario():
        await _seed(models)
        await engine.summarize_learner("kid-1")
        return await models.get_summaries("kid-1")

    assert asyncio.run(scenario())[0]["source"] == "ai"


def test_concurrent_sweeps_summarize_each_conversation_once(models, clock) -> None:
    claude = FakeClaude()
    claude.default = SUMMARY_JSON
    engine = _engine(models, claude, clock)

    async def scenario():
        await _seed(models)
        results = await asyncio.gather(engine.summarize_learner("kid-1"), engine.summarize_learner("kid-1"))
        return results, await models.get_summaries("kid-1")

    results, summaries = asyncio.run(scenario())
    assert sorted(r["summarized"] for r in results) == [0, 1]
    assert len(summaries) == 1
    assert len(claude.calls) == 1


def test_cleanup_learner_keeps_recent_messages(models, clock) -> None:
    claude = FakeClaude()
    claude.default = SUMMARY_JSON
    engine = _engine(models, claude, clock, recent_messages_limit=4, cleanup_trigger_multiplier=1.5)

    async def scenario():
        await _seed(models)
        status = await engine.cleanup_status("kid-1")
        result = await engine.cleanup_learner("kid-1")
        return status, result, await models.get_message_accounting("kid-1")

    status, result, accounting = asyncio.run(scenario())
    assert status["trigger_threshold"] == 6
    assert status["needs_cleanup"] is True
    assert result["action"] == "summarized"
    # Newest four held back: groups of 3 and 5 remain, only the 5 qualifies.
    assert result["messages_summarized"] == 5
    assert accounting == {"current_messages": 7, "summarized_messages": 5, "total_messages": 12}


def test_cleanup_learner_below_trigger_does_nothing(models, clock) -> None:
    claude = FakeClaude(SUMMARY_JSON)
    engine = _engine(models, claude, clock)

    async def scenario():
        await _seed(models)
        return await engine.cleanup_learner("kid-1")

    result = asyncio.run(scenario())
    assert result == {"learner_id": "kid-1", "action": "no_cleanup_needed", "summarized": 0}
    assert claude.calls == []


def test_flush_ended_sessions_summarizes_and_drops_session(models, clock) -> None:
    store = SessionStore(clock=clock)
    engine = _engine(models, FakeClaude(SUMMARY_JSON), clock, store=store)
    manager = ConversationManager(models, store)

    async def scenario():
        await models.get_or_create_learner("kid-1", guardian_id="parent-1", name="Ada")
        for i in range(3):
            clock.advance(minutes=1)
            await manager.add_user_message("kid-1", f"How do plants make food? ({i})")
            await manager.add_assistant_message("kid-1", "Photosynthesis uses sunlight, water and air.")
        session_id = await manager.end_session("kid-1", reason="logout")
        result = await engine.flush_ended_sessions()
        return session_id, result

    session_id, result = asyncio.run(scenario())
    assert result == {"sessions": 1, "summaries_created": 1, "failed": 0}
    assert session_id not in store._sessions
    assert asyncio.run(models.count_messages("kid-1")) == 0


def test_message_rows_round_trip_into_transcript(models, clock) -> None:
    async def scenario():
        await _seed(models, offsets=[timedelta(0), timedelta(minutes=1)])
        return await models.get_messages("kid-1")

    messages = [message_from_row(r) for r in asyncio.run(scenario())]
    assert messages[0].timestamp == T0
    transcript = build_transcript(messages)
    assert transcript.splitlines()[0].startswith("Student: ")
    assert transcript.splitlines()[1].startswith("Tutor: ")

    assert build_transcript(messages, max_chars=10).endswith("[...conversation truncated]")


def _two_conversations() -> list[timedelta]:
    return [timedelta(minutes=i) for i in range(6)] + [timedelta(hours=6, minutes=i) for i in range(6)]


def test_partial_failure_keeps_counts_of_stored_summaries(models, clock, monkeypatch) -> None:
    claude = FakeClaude()
    claude.default = SUMMARY_JSON
    engine = _engine(models, claude, clock)
    original = models.add_summary
    inserts = []

    async def second_insert_fails(**kwargs):
        inserts.append(kwargs["period_start"])
        if len(inserts) == 2:
            raise RuntimeError("connection reset")
        return await original(**kwargs)

    async def scenario():
        await _seed(models, offsets=_two_conversations())
        monkeypatch.setattr(models, "add_summary", second_insert_fails)
        with pytest.raises(CleanupError) as excinfo:
            await engine.summarize_learner("kid-1")
        return excinfo.value, await models.get_message_accounting("kid-1")

    error, accounting = asyncio.run(scenario())
    assert error.result["summarized"] == 1
    assert error.result["messages_summarized"] == 6
    assert error.result["failed"] == 1
    assert accounting == {"current_messages": 6, "summarized_messages": 6, "total_messages": 12}


def test_learner_locks_are_released_after_sweeps(models, clock) -> None:
    claude = FakeClaude()
    claude.default = SUMMARY_JSON
    engine = _engine(models, claude, clock)

    async def scenario():
        await _seed(models)
        await _seed(models, learner_id="kid-2")
        await asyncio.gather(
            engine.summarize_learner("kid-1"),
            engine.summarize_learner("kid-1"),
            engine.summarize_learner("kid-2"),
        )

    asyncio.run(scenario())
    assert engine._learner_locks == {}
