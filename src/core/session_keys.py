"""Session key resolver — maps (user, lane) to a conversation partition key.

Pure functions, no I/O. Each lane of a user gets its own stable key, so the
general chat, the goal assistant and the notes assistant keep separate
histories without a separate "conversation" table.
"""

from __future__ import annotations

import hashlib
from enum import Enum


class Lane(Enum):
    """A logically independent conversation thread type."""

    GENERAL = "general"
    GOAL = "goal"
    NOTES = "notes"

    @property
    def prefix(self) -> str:
        return _PREFIXES[self]


_PREFIXES = {
    Lane.GENERAL: "user",
    Lane.GOAL: "goal",
    Lane.NOTES: "notes",
}

_TOKEN_LENGTH = 16


def coerce_lane(lane: Lane | str) -> Lane:
    """Return ``lane`` as a Lane member. Raises ValueError for unknown lanes."""
    if isinstance(lane, Lane):
        return lane
    try:
        return Lane(str(lane).strip().lower())
    except ValueError:
        valid = ", ".join(item.value for item in Lane)
        raise ValueError(f"Unknown lane {lane!r}. Valid lanes: {valid}") from None


def resolve_session_key(
    user_id: int,
    lane: Lane | str,
    email: str | None = None,
    salt: str | None = None,
) -> str:
    """Derive the session key for a user's lane.

    Format: ``"{prefix}_{user_id}_{token}"`` where ``token`` is a short digest
    of the user id, the lane and a salt. ``email`` is accepted for callers that
    still pass it but never enters the key, so changing an email address does
    not orphan conversation history.
    """
    lane = coerce_lane(lane)
    if salt is None:
        from src.config import settings
        salt = settings.SESSION_KEY_SALT

    digest = hashlib.sha256(f"{salt}:{int(user_id)}:{lane.value}".encode("utf-8"))
    return f"{lane.prefix}_{int(user_id)}_{digest.hexdigest()[:_TOKEN_LENGTH]}"


def legacy_session_key(user_id: int, handle: str, lane: Lane | str) -> str:
    """The older key scheme that embedded the username/email in the key."""
    lane = coerce_lane(lane)
    return f"{lane.prefix}_{int(user_id)}_{handle}"
