"""Conversation store — ordered message history per session key.

Wraps a ConversationRepository with the get-or-create session semantics every
chat lane relies on. Sessions are created lazily on first write; clearing a
lane deletes its messages but keeps the session row.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.core.session_keys import Lane, legacy_session_key, resolve_session_key
from src.ports.conversation_port import DuplicateSessionError

if TYPE_CHECKING:
    from src.data.models import Message, Session
    from src.ports.conversation_port import ConversationRepository

logger = logging.getLogger(__name__)


class ConversationStore:
    """Session-scoped message access on top of a ConversationRepository."""

    def __init__(self, repository: ConversationRepository, salt: str | None = None) -> None:
        self._repo = repository
        self._salt = salt

    def key_for(self, user_id: int, lane: Lane | str) -> str:
        return resolve_session_key(user_id, lane, salt=self._salt)

    def ensure_session(self, user_id: int, session_key: str) -> Session:
        """Return the session for ``session_key``, creating it if needed.

        A concurrent creator may win the insert; the uniqueness violation is
        then resolved by reading back the winner's row.
        """
        existing = self._repo.get_session_by_session_id(session_key)
        if existing is not None:
            return existing

        try:
            return self._repo.create_session(user_id, session_key)
        except DuplicateSessionError:
            winner = self._repo.get_session_by_session_id(session_key)
            if winner is None:
                raise
            logger.debug("Session %s created concurrently, reusing it", session_key)
            return winner

    def list_messages(
        self, user_id: int, session_key: str, limit: int | None = None,
    ) -> list[Message]:
        """Messages in timestamp order. Re-queried on every call."""
        return self._repo.get_messages(user_id, session_key, limit=limit)

    def append_message(
        self, user_id: int, session_key: str, content: str, is_bot: bool,
    ) -> Message:
        self.ensure_session(user_id, session_key)
        return self._repo.create_message(user_id, session_key, content, is_bot)

    def clear_session(self, user_id: int, session_key: str) -> int:
        """Delete all messages of (user, session_key). Returns the count."""
        return self._repo.delete_messages(user_id, session_key)

    def adopt_legacy_history(self, user_id: int, handle: str, lane: Lane | str) -> int:
        """Move messages stored under the legacy key scheme to the current key.

        Returns how many messages were moved. The legacy session row is left in
        place since other rows may still reference it.
        """
        old_key = legacy_session_key(user_id, handle, lane)
        if self._repo.get_session_by_session_id(old_key) is None:
            return 0

        new_key = self.key_for(user_id, lane)
        self.ensure_session(user_id, new_key)
        moved = self._repo.rekey_messages(user_id, old_key, new_key)
        if moved:
            logger.info("Adopted %d legacy messages %s -> %s", moved, old_key, new_key)
        return moved
