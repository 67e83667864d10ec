"""Conversation port — storage interface behind the conversation store.

Core modules depend on this protocol, never on a specific database.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from src.data.models import Message, Session


class DuplicateSessionError(Exception):
    """Raised when a session row with the same session_id already exists."""


class ConversationRepository(Protocol):
    """Session and message persistence used by ConversationStore."""

    def get_session_by_session_id(self, session_id: str) -> Session | None: ...

    def create_session(self, user_id: int, session_id: str) -> Session: ...

    def get_messages(
        self, user_id: int, session_id: str, limit: int | None = None
    ) -> list[Message]: ...

    def create_message(
        self, user_id: int, session_id: str, content: str, is_bot: bool
    ) -> Message: ...

    def delete_messages(self, user_id: int, session_id: str) -> int: ...

    def rekey_messages(
        self, user_id: int, old_session_id: str, new_session_id: str
    ) -> int: ...
