"""In-memory cache of active conversation sessions, one per learner.

Nothing here is persisted. Losing the process loses the cached sessions; the
durable raw messages (see ai/conversation.py) remain the source of truth for
summarization, so an unflushed session is only "not yet summarized".

TTL is fixed from creation: activity never extends ``expires_at``.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

MAX_MESSAGES_PER_SESSION = 20
SESSION_EXPIRY_HOURS = 24
MIN_MESSAGES_FOR_SUMMARY = 5
IDLE_HOURS_BEFORE_SUMMARY = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    id: str
    role: str  # 'user' or 'assistant'
    content: str
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Session:
    id: str
    learner_id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    messages: list[Message] = field(default_factory=list)
    ready_for_summary: bool = False
    summary_marked_at: datetime | None = None
    start_reason: str = "new_session"
    end_reason: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class SessionStore:
    def __init__(
        self,
        max_messages: int = MAX_MESSAGES_PER_SESSION,
        expiry_hours: float = SESSION_EXPIRY_HOURS,
        min_messages_for_summary: int = MIN_MESSAGES_FOR_SUMMARY,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.max_messages = max_messages
        self.ttl = timedelta(hours=expiry_hours)
        self.min_messages_for_summary = min_messages_for_summary
        self.clock = clock
        self._sessions: dict[str, Session] = {}  # session id -> session
        self._by_learner: dict[str, str] = {}  # learner id -> session id
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, learner_id: str) -> asyncio.Lock:
        lock = self._locks.get(learner_id)
        if lock is None:
            lock = self._locks[learner_id] = asyncio.Lock()
        return lock

    def _remove(self, session: Session) -> None:
        self._sessions.pop(session.id, None)
        if self._by_learner.get(session.learner_id) == session.id:
            del self._by_learner[session.learner_id]

    def _create(self, learner_id: str, reason: str) -> Session:
        now = self.clock()
        session = Session(
            id=f"session_{learner_id}_{uuid.uuid4().hex[:12]}",
            learner_id=learner_id,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self.ttl,
            start_reason=reason,
        )
        self._sessions[session.id] = session
        self._by_learner[learner_id] = session.id
        logger.info(f"Created session {session.id} for learner {learner_id} (reason: {reason})")
        return session

    def _live(self, learner_id: str) -> Session | None:
        session_id = self._by_learner.get(learner_id)
        if session_id is None:
            return None
        session = self._sessions.get(session_id)
        if session is None or session.is_expired(self.clock()):
            return None
        return session

    def get(self, learner_id: str) -> Session | None:
        """The learner's live session, without creating one."""
        return self._live(learner_id)

    async def get_or_create(self, learner_id: str) -> Session:
        async with self._lock(learner_id):
            session = self._live(learner_id)
            if session is not None:
                return session
            stale_id = self._by_learner.get(learner_id)
            if stale_id and stale_id in self._sessions:
                self._remove(self._sessions[stale_id])
            return self._create(learner_id, "new_session")

    def new_message(self, role: str, content: str, metadata: dict | None = None) -> Message:
        return Message(
            id=f"msg_{uuid.uuid4().hex}",
            role=role,
            content=content,
            timestamp=self.clock(),
            metadata=dict(metadata or {}),
        )

    async def append(
        self, session_id: str, role: str, content: str, metadata: dict | None = None
    ) -> bool:
        return await self.append_message(session_id, self.new_message(role, content, metadata))

    async def append_message(self, session_id: str, message: Message) -> bool:
        """Append a message; False (no side effect) if the session is gone or expired.

        Only the most recent ``max_messages`` are kept."""
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning(f"Attempted to add message to non-existent session: {session_id}")
            return False

        async with self._lock(session.learner_id):
            # The sweep may have removed it while we waited for the lock.
            if self._sessions.get(session_id) is not session:
                logger.warning(f"Session {session_id} was removed before append")
                return False
            now = self.clock()
            if session.is_expired(now):
                logger.warning(f"Attempted to add message to expired session: {session_id}")
                self._remove(session)
                return False

            session.messages.append(message)
            if len(session.messages) > self.max_messages:
                session.messages = session.messages[-self.max_messages:]
            session.last_activity_at = now

        logger.debug(
            f"Added {message.role} message to session {session_id}. "
            f"Total messages: {len(session.messages)}"
        )
        return True

    def snapshot(self, learner_id: str, max_messages: int = 10) -> dict:
        """Recent conversation context for the tutor prompt."""
        session = self._live(learner_id)
        if session is None:
            return {"messages": [], "has_history": False, "session_id": None, "message_count": 0}

        recent = session.messages[-max_messages:] if max_messages > 0 else []
        return {
            "messages": [
                {
                    "role": "assistant" if m.role == "assistant" else "user",
                    "content": m.content,
                    "timestamp": m.timestamp,
                }
                for m in recent
            ],
            "has_history": len(recent) > 0,
            "session_id": session.id,
            "message_count": len(session.messages),
            "last_activity": session.last_activity_at,
        }

    def mark_ready_for_summary(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.ready_for_summary = True
        session.summary_marked_at = self.clock()
        logger.info(f"Session {session_id} marked for summary generation")
        return True

    async def end_session(self, learner_id: str, reason: str = "manual") -> str | None:
        """End the learner's session (new chat, logout).

        Sessions long enough to summarize are kept and marked ready; shorter
        ones are dropped right away. Returns the ended session id."""
        async with self._lock(learner_id):
            session_id = self._by_learner.get(learner_id)
            session = self._sessions.get(session_id) if session_id else None
            if session is None:
                return None

            if len(session.messages) >= self.min_messages_for_summary:
                session.ready_for_summary = True
                session.summary_marked_at = self.clock()
                session.end_reason = reason
                # Detach so the learner's next turn opens a fresh session.
                del self._by_learner[learner_id]
                logger.info(f"Session {session.id} marked for summary before ending (reason: {reason})")
            else:
                self._remove(session)
                logger.info(
                    f"Session {session.id} ended and removed "
                    f"(reason: {reason}, messages: {len(session.messages)})"
                )
            return session.id

    async def force_new_session(self, learner_id: str, reason: str = "new_session") -> Session:
        await self.end_session(learner_id, reason)
        async with self._lock(learner_id):
            return self._create(learner_id, reason)

    def sessions_ready_for_summary(self, idle_hours: float = IDLE_HOURS_BEFORE_SUMMARY) -> list[Session]:
        now = self.clock()
        cutoff = now - timedelta(hours=idle_hours)
        return [
            s for s in list(self._sessions.values())
            if len(s.messages) >= self.min_messages_for_summary
            and (s.ready_for_summary or s.last_activity_at < cutoff or s.is_expired(now))
        ]

    async def discard(self, session_id: str) -> bool:
        """Drop a session once it has been folded into a summary."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        async with self._lock(session.learner_id):
            if self._sessions.get(session_id) is not session:
                return False
            self._remove(session)
        logger.info(f"Cleaned up session {session_id}")
        return True

    async def expire_sweep(self) -> int:
        """Remove every expired session. Returns how many were removed."""
        removed = 0
        for session in list(self._sessions.values()):
            async with self._lock(session.learner_id):
                if self._sessions.get(session.id) is session and session.is_expired(self.clock()):
                    self._remove(session)
                    removed += 1
        # Forget idle locks of learners that no longer have any session.
        owners = {s.learner_id for s in self._sessions.values()}
        for learner_id, lock in list(self._locks.items()):
            if learner_id not in owners and not lock.locked():
                del self._locks[learner_id]
        if removed:
            logger.info(f"Cleaned up {removed} expired sessions")
        logger.debug(f"Active sessions: {len(self._sessions)}")
        return removed

    def stats(self) -> dict:
        now = self.clock()
        by_age = {"under_1_hour": 0, "under_6_hours": 0, "under_24_hours": 0, "expired": 0}
        total_messages = 0
        for session in self._sessions.values():
            idle_hours = (now - session.last_activity_at).total_seconds() / 3600
            if session.is_expired(now):
                by_age["expired"] += 1
            elif idle_hours < 1:
                by_age["under_1_hour"] += 1
            elif idle_hours < 6:
                by_age["under_6_hours"] += 1
            else:
                by_age["under_24_hours"] += 1
            total_messages += len(session.messages)
        return {
            "total_active_sessions": len(self._sessions),
            "sessions_by_age": by_age,
            "total_messages": total_messages,
        }

    def clear(self) -> int:
        count = len(self._sessions)
        self._sessions.clear()
        self._by_learner.clear()
        logger.warning(f"Force cleared all {count} sessions")
        return count
