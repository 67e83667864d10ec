"""
Mirai Assistant — SQLite storage.

The Memory pillar: users, conversation lanes, goals and notes persist in SQLite
across bot restarts. Each table family gets its own small DB class; they can
share one database file (the default) or use separate ones in tests.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.data.models import PRIORITIES, RECURRING_TYPES, Goal, Message, Note, Session, User
from src.ports.conversation_port import DuplicateSessionError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as a UTC ISO string with fixed precision.

    Fixed precision keeps lexical order equal to chronological order.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(raw: str | None, column: str = "") -> datetime | None:
    """Parse a stored timestamp. Malformed values load as None."""
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed %s value %r", column or "timestamp", raw)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _SQLiteStore:
    """Connection handling shared by the DB classes below."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError


class UserDB(_SQLiteStore):
    """SQLite-backed storage for registered bot users."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id                 INTEGER PRIMARY KEY,
                    username                TEXT    NOT NULL,
                    email                   TEXT UNIQUE,
                    is_admin                INTEGER NOT NULL DEFAULT 0,
                    created_at              TEXT    NOT NULL,
                    initial_login_at        TEXT,
                    onboarding_completed_at TEXT
                )
            """)
        logger.debug("Users table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            user_id=row["user_id"],
            username=row["username"],
            email=row["email"],
            is_admin=bool(row["is_admin"]),
            created_at=row["created_at"],
            initial_login_at=row["initial_login_at"],
            onboarding_completed_at=row["onboarding_completed_at"],
        )

    def add_user(
        self,
        user_id: int,
        username: str,
        email: str | None = None,
        is_admin: bool = False,
    ) -> User:
        """Register a new user. Raises sqlite3.IntegrityError on duplicates."""
        now = _to_iso(_utcnow())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, username, email, is_admin, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, username, email, int(is_admin), now),
            )
        logger.info("User registered: %d '%s'", user_id, username)
        return User(
            user_id=user_id,
            username=username,
            email=email,
            is_admin=is_admin,
            created_at=now,
        )

    def get_user(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(self) -> list[User]:
        """Return all registered users, oldest first."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at").fetchall()
        return [self._row_to_user(r) for r in rows]

    def stamp_initial_login(self, user_id: int) -> None:
        """Record the first login. Later calls keep the original stamp."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET initial_login_at = ? "
                "WHERE user_id = ? AND initial_login_at IS NULL",
                (_to_iso(_utcnow()), user_id),
            )

    def complete_onboarding(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET onboarding_completed_at = ? WHERE user_id = ?",
                (_to_iso(_utcnow()), user_id),
            )
        logger.info("User %d completed onboarding", user_id)


class ConversationDB(_SQLiteStore):
    """SQLite-backed sessions and messages (implements ConversationRepository)."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id    INTEGER NOT NULL,
                    session_id TEXT    NOT NULL UNIQUE,
                    created_at TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id    INTEGER NOT NULL,
                    content    TEXT    NOT NULL,
                    is_bot     INTEGER NOT NULL,
                    timestamp  TEXT    NOT NULL,
                    session_id TEXT    NOT NULL
                        REFERENCES sessions (session_id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_session "
                "ON messages (session_id, timestamp)"
            )
        logger.debug("Sessions/messages tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            session_id=row["session_id"],
            created_at=_from_iso(row["created_at"], "created_at"),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            user_id=row["user_id"],
            content=row["content"],
            is_bot=bool(row["is_bot"]),
            timestamp=_from_iso(row["timestamp"], "timestamp"),
            session_id=row["session_id"],
        )

    def get_session_by_session_id(self, session_id: str) -> Session | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def create_session(self, user_id: int, session_id: str) -> Session:
        """Insert a session row. Raises DuplicateSessionError if the key exists."""
        created_at = _utcnow()
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO sessions (user_id, session_id, created_at) VALUES (?, ?, ?)",
                    (user_id, session_id, _to_iso(created_at)),
                )
                row_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateSessionError(session_id) from exc

        logger.info("Session created for user %d: %s", user_id, session_id)
        return Session(
            id=row_id, user_id=user_id, session_id=session_id, created_at=created_at,
        )

    def get_messages(
        self, user_id: int, session_id: str, limit: int | None = None,
    ) -> list[Message]:
        """Messages of one session, oldest first.

        With ``limit``, only the most recent ``limit`` messages are returned
        (still oldest first).
        """
        query = "SELECT * FROM messages WHERE user_id = ? AND session_id = ?"
        params: list = [user_id, session_id]
        if limit is not None:
            query = (
                f"SELECT * FROM ({query} ORDER BY timestamp DESC, id DESC LIMIT ?)"
            )
            params.append(limit)
        query += " ORDER BY timestamp, id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_message(r) for r in rows]

    def create_message(
        self, user_id: int, session_id: str, content: str, is_bot: bool,
    ) -> Message:
        """Insert one message. The session row must already exist."""
        timestamp = _utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages (user_id, content, is_bot, timestamp, session_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, content, int(is_bot), _to_iso(timestamp), session_id),
            )
            message_id = cursor.lastrowid
        return Message(
            id=message_id,
            user_id=user_id,
            content=content,
            is_bot=is_bot,
            timestamp=timestamp,
            session_id=session_id,
        )

    def delete_messages(self, user_id: int, session_id: str) -> int:
        """Delete every message of a session. The session row is kept."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM messages WHERE user_id = ? AND session_id = ?",
                (user_id, session_id),
            )
        deleted = cursor.rowcount
        logger.info("Deleted %d messages from %s", deleted, session_id)
        return deleted

    def rekey_messages(
        self, user_id: int, old_session_id: str, new_session_id: str,
    ) -> int:
        """Move a user's messages from one session to another (which must exist)."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE messages SET session_id = ? WHERE user_id = ? AND session_id = ?",
                (new_session_id, user_id, old_session_id),
            )
        return cursor.rowcount


class GoalDB(_SQLiteStore):
    """SQLite-backed storage for goals and their reminders (implements GoalPort)."""

    _UPDATABLE = frozenset({
        "title", "description", "completed", "due_date", "priority", "category",
        "tags", "reminder_time", "is_recurring", "recurring_type",
        "recurring_interval", "recurring_end_date",
    })
    _DATETIME_FIELDS = frozenset({"due_date", "reminder_time", "recurring_end_date"})

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS goals (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id            INTEGER NOT NULL,
                    title              TEXT    NOT NULL,
                    description        TEXT    NOT NULL DEFAULT '',
                    completed          INTEGER NOT NULL DEFAULT 0,
                    due_date           TEXT,
                    priority           TEXT    NOT NULL DEFAULT 'medium',
                    category           TEXT,
                    tags               TEXT    NOT NULL DEFAULT '[]',
                    reminder_time      TEXT,
                    is_recurring       INTEGER NOT NULL DEFAULT 0,
                    recurring_type     TEXT,
                    recurring_interval INTEGER,
                    recurring_end_date TEXT,
                    created_at         TEXT    NOT NULL,
                    updated_at         TEXT    NOT NULL
                )
            """)
        logger.debug("Goals table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_goal(row: sqlite3.Row) -> Goal:
        try:
            tags = json.loads(row["tags"] or "[]")
        except ValueError:
            tags = []
        return Goal(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            completed=bool(row["completed"]),
            due_date=_from_iso(row["due_date"], "due_date"),
            priority=row["priority"],
            category=row["category"],
            tags=tags,
            reminder_time=_from_iso(row["reminder_time"], "reminder_time"),
            is_recurring=bool(row["is_recurring"]),
            recurring_type=row["recurring_type"],
            recurring_interval=row["recurring_interval"],
            recurring_end_date=_from_iso(row["recurring_end_date"], "recurring_end_date"),
            created_at=_from_iso(row["created_at"], "created_at"),
            updated_at=_from_iso(row["updated_at"], "updated_at"),
        )

    @staticmethod
    def _validate(fields: dict[str, Any]) -> None:
        priority = fields.get("priority")
        if priority is not None and priority not in PRIORITIES:
            raise ValueError(f"Invalid priority {priority!r}")
        recurring_type = fields.get("recurring_type")
        if recurring_type is not None and recurring_type not in RECURRING_TYPES:
            raise ValueError(f"Invalid recurring_type {recurring_type!r}")
        interval = fields.get("recurring_interval")
        if interval is not None and interval <= 0:
            raise ValueError("recurring_interval must be positive")
        if "title" in fields and not (fields["title"] or "").strip():
            raise ValueError("Goal title is required")

    def _to_column(self, name: str, value: Any) -> Any:
        if name in self._DATETIME_FIELDS:
            return _to_iso(value)
        if name == "tags":
            return json.dumps(list(value or []))
        if name in ("completed", "is_recurring"):
            return int(bool(value))
        return value

    def create_goal(
        self,
        user_id: int,
        title: str,
        description: str = "",
        completed: bool = False,
        due_date: datetime | None = None,
        priority: str = "medium",
        category: str | None = None,
        tags: list[str] | None = None,
        reminder_time: datetime | None = None,
        is_recurring: bool = False,
        recurring_type: str | None = None,
        recurring_interval: int | None = None,
        recurring_end_date: datetime | None = None,
    ) -> Goal:
        """Insert a new goal and return it as stored."""
        fields = {
            "title": title.strip() if title else title,
            "description": description or "",
            "completed": completed,
            "due_date": due_date,
            "priority": priority or "medium",
            "category": category,
            "tags": tags or [],
            "reminder_time": reminder_time,
            "is_recurring": is_recurring,
            "recurring_type": recurring_type,
            "recurring_interval": recurring_interval,
            "recurring_end_date": recurring_end_date,
        }
        self._validate(fields)
        now = _to_iso(_utcnow())

        columns = list(fields) + ["user_id", "created_at", "updated_at"]
        values = [self._to_column(k, v) for k, v in fields.items()] + [user_id, now, now]
        placeholders = ", ".join("?" for _ in columns)

        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO goals ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            goal_id = cursor.lastrowid
            row = conn.execute("SELECT * FROM goals WHERE id = ?", (goal_id,)).fetchone()

        logger.info("Goal added: #%d '%s' for user %d", goal_id, fields["title"], user_id)
        return self._row_to_goal(row)

    def get_goal(self, goal_id: int, user_id: int) -> Goal | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM goals WHERE id = ? AND user_id = ?", (goal_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_goal(row)

    def get_goals_by_user(self, user_id: int) -> list[Goal]:
        """All goals of a user, most recently updated first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM goals WHERE user_id = ? ORDER BY updated_at DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_goal(r) for r in rows]

    def update_goal(self, goal_id: int, user_id: int, **changes: Any) -> Goal:
        """Apply a partial update. Raises ValueError if the goal is missing."""
        unknown = set(changes) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Unknown goal fields: {', '.join(sorted(unknown))}")
        self._validate(changes)

        assignments = [f"{k} = ?" for k in changes] + ["updated_at = ?"]
        values = [self._to_column(k, v) for k, v in changes.items()]
        values += [_to_iso(_utcnow()), goal_id, user_id]

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE goals SET {', '.join(assignments)} WHERE id = ? AND user_id = ?",
                values,
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Goal {goal_id} not found")
            row = conn.execute("SELECT * FROM goals WHERE id = ?", (goal_id,)).fetchone()

        logger.info("Goal #%d updated: %s", goal_id, ", ".join(sorted(changes)) or "touch")
        return self._row_to_goal(row)

    def delete_goal(self, goal_id: int, user_id: int) -> bool:
        """Permanently delete a goal."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM goals WHERE id = ? AND user_id = ?", (goal_id, user_id),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Goal #%d deleted", goal_id)
        return deleted


class NoteDB(_SQLiteStore):
    """SQLite-backed storage for notes."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notes (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id    INTEGER NOT NULL,
                    title      TEXT    NOT NULL,
                    content    TEXT    NOT NULL,
                    created_at TEXT    NOT NULL,
                    updated_at TEXT    NOT NULL
                )
            """)
        logger.debug("Notes table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> Note:
        return Note(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            content=row["content"],
            created_at=_from_iso(row["created_at"], "created_at"),
            updated_at=_from_iso(row["updated_at"], "updated_at"),
        )

    def create_note(self, user_id: int, title: str, content: str) -> Note:
        if not title.strip():
            raise ValueError("Note title is required")
        now = _utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO notes (user_id, title, content, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (user_id, title.strip(), content, _to_iso(now), _to_iso(now)),
            )
            note_id = cursor.lastrowid
        logger.info("Note added: #%d '%s'", note_id, title)
        return Note(
            id=note_id, user_id=user_id, title=title.strip(), content=content,
            created_at=now, updated_at=now,
        )

    def get_note(self, note_id: int, user_id: int) -> Note | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notes WHERE id = ? AND user_id = ?", (note_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_note(row)

    def list_notes(self, user_id: int) -> list[Note]:
        """Notes of a user, most recently updated first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notes WHERE user_id = ? ORDER BY updated_at DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_note(r) for r in rows]

    def update_note(
        self,
        note_id: int,
        user_id: int,
        title: str | None = None,
        content: str | None = None,
    ) -> Note | None:
        """Update title and/or content. Returns None if the note is missing."""
        existing = self.get_note(note_id, user_id)
        if existing is None:
            return None
        new_title = title.strip() if title is not None else existing.title
        new_content = content if content is not None else existing.content
        now = _utcnow()
        with self._connect() as conn:
            conn.execute(
                "UPDATE notes SET title = ?, content = ?, updated_at = ? "
                "WHERE id = ? AND user_id = ?",
                (new_title, new_content, _to_iso(now), note_id, user_id),
            )
        existing.title = new_title
        existing.content = new_content
        existing.updated_at = now
        return existing

    def delete_note(self, note_id: int, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM notes WHERE id = ? AND user_id = ?", (note_id, user_id),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Note #%d deleted", note_id)
        return deleted
