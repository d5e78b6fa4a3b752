"""Deterministic structural features of a conversation.

These feed the fallback summaries and digests when the text-generation
service is unavailable, and give it hints when it is.
"""

from memory.session_store import Message

TOPIC_KEYWORDS = {
    "Math": ["math", "number", "addition", "subtraction", "multiplication", "division",
             "fraction", "algebra", "geometry", "equation"],
    "Science": ["science", "experiment", "biology", "chemistry", "physics", "nature",
                "animal", "plant"],
    "Reading": ["reading", "book", "story", "character", "plot", "author", "literature"],
    "Writing": ["writing", "essay", "paragraph", "sentence", "grammar", "spelling",
                "composition"],
    "History": ["history", "historical", "ancient", "war", "civilization", "culture"],
    "Geography": ["geography", "country", "continent", "map", "climate"],
}

MAX_TOPICS = 5

# Daily engagement thresholds: messages per session, messages per active minute.
HIGH_MESSAGES_PER_SESSION = 15
HIGH_MESSAGES_PER_MINUTE = 1.0
MEDIUM_MESSAGES_PER_SESSION = 8
MEDIUM_MESSAGES_PER_MINUTE = 0.5


def detect_topics(texts: list[str]) -> list[str]:
    """Subjects ranked by keyword hits, most frequent first."""
    counts: dict[str, int] = {}
    for text in texts:
        lowered = text.lower()
        for subject, keywords in TOPIC_KEYWORDS.items():
            hits = sum(1 for k in keywords if k in lowered)
            if hits:
                counts[subject] = counts.get(subject, 0) + hits
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [subject for subject, _ in ranked[:MAX_TOPICS]]


def analyze_messages(messages: list[Message]) -> dict:
    """Topic, role and engagement features of one conversation."""
    user_messages = sum(1 for m in messages if m.role == "user")
    avg_length = (
        sum(len(m.content) for m in messages) / len(messages) if messages else 0
    )

    if avg_length > 100 and user_messages > 3:
        engagement = "high"
    elif avg_length < 30 or user_messages < 2:
        engagement = "low"
    else:
        engagement = "medium"

    return {
        "topics": detect_topics([m.content for m in messages]),
        "message_count": len(messages),
        "user_messages": user_messages,
        "assistant_messages": len(messages) - user_messages,
        "avg_message_length": round(avg_length, 1),
        "engagement_level": engagement,
    }


def daily_engagement_level(total_messages: int, session_count: int, active_minutes: float) -> str:
    """high / medium / low from messages per session and interaction density."""
    if session_count <= 0:
        return "low"
    per_session = total_messages / session_count
    # A conversation of one burst still took some time.
    per_minute = total_messages / max(active_minutes, 1.0)

    if per_session >= HIGH_MESSAGES_PER_SESSION and per_minute >= HIGH_MESSAGES_PER_MINUTE:
        return "high"
    if per_session >= MEDIUM_MESSAGES_PER_SESSION and per_minute >= MEDIUM_MESSAGES_PER_MINUTE:
        return "medium"
    return "low"
