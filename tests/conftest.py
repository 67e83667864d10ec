"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides DB fixtures backed by a temp file.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")

from datetime import datetime, timezone

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_mirai.db")


@pytest.fixture
def user_db(tmp_db_path):
    from src.data.db import UserDB
    return UserDB(db_path=tmp_db_path)


@pytest.fixture
def conversation_db(tmp_db_path):
    from src.data.db import ConversationDB
    return ConversationDB(db_path=tmp_db_path)


@pytest.fixture
def goal_db(tmp_db_path):
    from src.data.db import GoalDB
    return GoalDB(db_path=tmp_db_path)


@pytest.fixture
def note_db(tmp_db_path):
    from src.data.db import NoteDB
    return NoteDB(db_path=tmp_db_path)


@pytest.fixture
def now():
    """A fixed 'current time' used by the reminder tests."""
    return datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _make_goal(goal_id=1, reminder_time=None, completed=False, user_id=12345, **fields):
    """Build an in-memory Goal without touching the DB."""
    from src.data.models import Goal
    return Goal(
        id=goal_id,
        user_id=user_id,
        title=fields.pop("title", f"Goal {goal_id}"),
        completed=completed,
        reminder_time=reminder_time,
        **fields,
    )


@pytest.fixture
def make_goal():
    return _make_goal

