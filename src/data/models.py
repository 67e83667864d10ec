"""
Mirai Assistant — Data Models.

Plain dataclasses shared by the storage layer, the core services and the bot.
All datetimes are timezone-aware UTC; the storage layer converts them to and
from ISO-8601 strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

PRIORITIES = ("low", "medium", "high")
RECURRING_TYPES = ("daily", "weekly", "monthly", "custom")


@dataclass
class User:
    """A registered bot user. Owns sessions, messages, goals and notes."""

    user_id: int                      # Telegram user id
    username: str
    email: str | None = None
    is_admin: bool = False
    created_at: str = ""
    initial_login_at: str | None = None
    onboarding_completed_at: str | None = None


@dataclass
class Session:
    """A conversation partition. One row per distinct session_id."""

    id: int
    user_id: int
    session_id: str
    created_at: datetime


@dataclass
class Message:
    """A single chat message inside a session, user- or bot-authored."""

    id: int
    user_id: int
    content: str
    is_bot: bool
    timestamp: datetime
    session_id: str


@dataclass
class Goal:
    """A task the user tracks, optionally with a reminder and recurrence.

    ``reminder_time`` is None both when no reminder was set and when the
    stored value could not be parsed; either way the goal never fires.
    """

    id: int
    user_id: int
    title: str
    description: str = ""
    completed: bool = False
    due_date: datetime | None = None
    priority: str = "medium"
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    reminder_time: datetime | None = None
    is_recurring: bool = False
    recurring_type: str | None = None
    recurring_interval: int | None = None
    recurring_end_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Note:
    """A free-form note. Used as context by the notes lane."""

    id: int
    user_id: int
    title: str
    content: str
    created_at: datetime
    updated_at: datetime
