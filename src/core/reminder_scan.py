"""Reminder scan — finds goals whose reminder is due and not yet shown.

Pure business logic, no I/O. A scanner instance carries two small maps between
calls:

- ``dedup_cache``: goal id -> reminder instant already shown for that goal.
  A goal is suppressed only while its *current* reminder equals the cached one.
- ``previous_snapshot``: goal id -> reminder instant seen on the last scan.
  When a goal's reminder changes between scans its cache entry is evicted
  straight away, so a rescheduled reminder can fire again.

Reminder instants are compared as epoch milliseconds, never as strings.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from src.data.models import Goal

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(minutes=10)
DEFAULT_RETENTION = timedelta(hours=24)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


def to_epoch_ms(value: datetime) -> int:
    """Epoch milliseconds of ``value``. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // _MILLISECOND


def _reminder_ms(goal: Goal) -> int | None:
    reminder = goal.reminder_time
    if not isinstance(reminder, datetime):
        return None
    return to_epoch_ms(reminder)


class ReminderScanner:
    """Stateful due-reminder detector for one user."""

    def __init__(
        self,
        window: timedelta = DEFAULT_WINDOW,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        self.window = window
        self.retention = retention
        self.dedup_cache: dict[int, int] = {}
        self.previous_snapshot: dict[int, int] = {}

    def scan(self, goals: Iterable[Goal], now: datetime) -> list[Goal]:
        """Return due, not-yet-shown goals sorted by reminder time (earliest first).

        ``goals`` is treated as a read-only snapshot.
        """
        goals = list(goals)
        self._track_changes(goals)

        now_ms = to_epoch_ms(now)
        oldest_ms = to_epoch_ms(now - self.window)

        due: list[tuple[int, int, Goal]] = []
        for goal in goals:
            reminder_ms = _reminder_ms(goal)
            if reminder_ms is None or goal.completed:
                continue
            if not (oldest_ms <= reminder_ms <= now_ms):
                continue
            if self.dedup_cache.get(goal.id) == reminder_ms:
                continue
            due.append((reminder_ms, goal.id, goal))

        due.sort(key=lambda item: (item[0], item[1]))
        if due:
            logger.debug("Due reminders: %s", [g.id for _, _, g in due])
        return [goal for _, _, goal in due]

    def _track_changes(self, goals: list[Goal]) -> None:
        current: dict[int, int] = {}
        for goal in goals:
            reminder_ms = _reminder_ms(goal)
            if reminder_ms is None:
                continue
            previous = self.previous_snapshot.get(goal.id)
            if previous is not None and previous != reminder_ms:
                if self.dedup_cache.pop(goal.id, None) is not None:
                    logger.info(
                        "Goal #%d reminder changed, re-arming notification", goal.id,
                    )
            current[goal.id] = reminder_ms
        self.previous_snapshot = current

    def mark_shown(self, goal: Goal) -> None:
        """Suppress ``goal`` until its reminder time changes."""
        reminder_ms = _reminder_ms(goal)
        if reminder_ms is None:
            return
        self.dedup_cache[goal.id] = reminder_ms

    def evict_expired(self, now: datetime) -> int:
        """Drop cache entries whose reminder is older than the retention period."""
        cutoff_ms = to_epoch_ms(now - self.retention)
        expired = [gid for gid, ms in self.dedup_cache.items() if ms < cutoff_ms]
        for goal_id in expired:
            del self.dedup_cache[goal_id]
        if expired:
            logger.debug("Evicted %d expired reminder cache entries", len(expired))
        return len(expired)

    def reset(self) -> None:
        self.dedup_cache.clear()
        self.previous_snapshot.clear()
