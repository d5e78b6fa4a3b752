"""Split a learner's message history into conversations by inactivity gaps."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from memory.session_store import Message

SESSION_GAP_HOURS = 4


@dataclass
class ConversationGroup:
    messages: list[Message] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def message_ids(self) -> list[str]:
        return [m.id for m in self.messages]


def group_into_sessions(
    messages: list[Message], gap_hours: float = SESSION_GAP_HOURS
) -> list[ConversationGroup]:
    """Greedy single pass over time-ordered messages.

    A new group starts only when the gap to the previous message is strictly
    greater than ``gap_hours``; a gap of exactly ``gap_hours`` stays in the
    same group.
    """
    gap = timedelta(hours=gap_hours)
    groups: list[ConversationGroup] = []
    current: ConversationGroup | None = None

    for message in messages:
        if current is None or message.timestamp - current.end_time > gap:
            current = ConversationGroup(
                messages=[message],
                start_time=message.timestamp,
                end_time=message.timestamp,
            )
            groups.append(current)
        else:
            current.messages.append(message)
            current.end_time = message.timestamp

    return groups


def summarizable_groups(
    groups: list[ConversationGroup], min_messages: int
) -> list[ConversationGroup]:
    """Groups large enough to summarize. Smaller groups are left alone, not deleted."""
    return [g for g in groups if len(g.messages) >= min_messages]
