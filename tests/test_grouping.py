from datetime import timedelta

from memory.grouping import group_into_sessions, summarizable_groups
from memory.session_store import Message

from conftest import T0


def _messages(offsets: list[timedelta]) -> list[Message]:
    return [
        Message(id=f"m{i}", role="user" if i % 2 == 0 else "assistant", content=f"text {i}", timestamp=T0 + offset)
        for i, offset in enumerate(offsets)
    ]


def test_empty_history_has_no_groups() -> None:
    assert group_into_sessions([]) == []


def test_close_messages_form_one_group() -> None:
    groups = group_into_sessions(_messages([timedelta(minutes=m) for m in range(0, 50, 10)]))
    assert len(groups) == 1
    assert groups[0].start_time == T0
    assert groups[0].end_time == T0 + timedelta(minutes=40)


def test_gap_of_exactly_threshold_does_not_split() -> None:
    groups = group_into_sessions(_messages([timedelta(0), timedelta(hours=4)]), gap_hours=4)
    assert len(groups) == 1


def test_gap_just_over_threshold_splits() -> None:
    groups = group_into_sessions(
        _messages([timedelta(0), timedelta(hours=4, microseconds=1)]), gap_hours=4
    )
    assert [g.message_ids for g in groups] == [["m0"], ["m1"]]


def test_gap_is_measured_from_previous_message() -> None:
    # Three hours between each message: one long conversation, never split.
    groups = group_into_sessions(_messages([timedelta(hours=3 * i) for i in range(5)]))
    assert len(groups) == 1
    assert len(groups[0].messages) == 5


def test_small_groups_are_not_summarizable() -> None:
    offsets = [timedelta(minutes=i) for i in range(3)] + [timedelta(hours=10, minutes=i) for i in range(9)]
    groups = group_into_sessions(_messages(offsets))
    assert [len(g.messages) for g in groups] == [3, 9]
    eligible = summarizable_groups(groups, min_messages=5)
    assert len(eligible) == 1
    assert eligible[0].message_ids == [f"m{i}" for i in range(3, 12)]
