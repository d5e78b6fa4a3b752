"""Chat-turn ingress: every turn goes to the live session and to durable storage."""

import logging

from db.models import Models
from memory.session_store import Message, SessionStore

logger = logging.getLogger(__name__)


class ConversationManager:
    def __init__(self, models: Models, store: SessionStore) -> None:
        self.models = models
        self.store = store

    async def start_session(self, learner_id: str, reason: str = "new_session") -> str:
        """Force a fresh session (login, "New chat"); returns its id."""
        session = await self.store.force_new_session(learner_id, reason)
        return session.id

    async def end_session(self, learner_id: str, reason: str = "manual") -> str | None:
        return await self.store.end_session(learner_id, reason)

    async def _record(self, learner_id: str, role: str, content: str, metadata: dict | None) -> Message:
        message = self.store.new_message(role, content, metadata)
        # Durable first: a failed insert must not leave the message in the session.
        await self.models.add_message(
            message_id=message.id,
            learner_id=learner_id,
            role=message.role,
            content=message.content,
            created_at=message.timestamp,
            metadata=message.metadata,
        )

        session = await self.store.get_or_create(learner_id)
        if not await self.store.append_message(session.id, message):
            # Expired or swept between lookup and append; the next lookup opens a new one.
            session = await self.store.get_or_create(learner_id)
            if not await self.store.append_message(session.id, message):
                logger.warning(
                    f"Message {message.id} stored but not added to a live session for learner {learner_id}"
                )
        return message

    async def add_user_message(self, learner_id: str, text: str, metadata: dict | None = None) -> Message:
        return await self._record(learner_id, "user", text, metadata)

    async def add_assistant_message(self, learner_id: str, text: str, metadata: dict | None = None) -> Message:
        return await self._record(learner_id, "assistant", text, metadata)

    def get_context(self, learner_id: str, limit: int = 10) -> dict:
        """Get the last N messages for the tutor's context window."""
        return self.store.snapshot(learner_id, limit)
