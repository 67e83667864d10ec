"""Notification lifecycle — shows at most one due reminder at a time.

One controller per user. It is either IDLE or SHOWING a single goal; the
earliest due reminder is picked when idle. Leaving SHOWING happens through
complete, snooze, snooze-until-tomorrow or dismiss, or on a later scan once the
shown reminder is gone, changed, completed or older than the scan window. Each of those records the
shown reminder in the scanner's dedup cache, so the same reminder value never
fires twice while a rescheduled one still can.

Mutations go through a GoalPort. If one fails, ReminderActionError is raised
and the controller keeps SHOWING so the user can retry or dismiss.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Iterable
from zoneinfo import ZoneInfo

from src.config import settings
from src.core.recurrence import complete_goal
from src.core.reminder_scan import ReminderScanner, to_epoch_ms

if TYPE_CHECKING:
    from src.data.models import Goal
    from src.ports.goal_port import GoalPort

logger = logging.getLogger(__name__)


class ReminderState(Enum):
    IDLE = "idle"
    SHOWING = "showing"


class ReminderActionError(Exception):
    """Raised when a reminder action could not update the goal."""


class NoActiveReminderError(Exception):
    """Raised when acting on a reminder that is not the one showing."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationController:
    """Per-user reminder state machine (IDLE <-> SHOWING)."""

    def __init__(
        self,
        user_id: int,
        goals: GoalPort,
        scanner: ReminderScanner | None = None,
    ) -> None:
        self.user_id = user_id
        self._goals = goals
        self.scanner = scanner or ReminderScanner()
        self._showing: Goal | None = None
        self._generation = 0

    @property
    def state(self) -> ReminderState:
        return ReminderState.IDLE if self._showing is None else ReminderState.SHOWING

    @property
    def current(self) -> Goal | None:
        return self._showing

    # -- refresh -----------------------------------------------------------

    def begin_refresh(self) -> int:
        """Issue a new fetch generation. Older generations become stale."""
        self._generation += 1
        return self._generation

    def apply_goals(
        self, generation: int, goals: Iterable[Goal], now: datetime | None = None,
    ) -> Goal | None:
        """Scan a fetched goal list and return the goal to show, if any.

        Results from a superseded fetch are discarded without scanning. A shown
        reminder that no longer matches the fetched goals is released first,
        so the next due reminder can take its place.
        """
        if generation < self._generation:
            logger.debug(
                "Discarding stale goal list for user %d (generation %d < %d)",
                self.user_id, generation, self._generation,
            )
            return None

        now = now or _utcnow()
        goals = list(goals)
        self._release_if_stale(goals, now)

        due = self.scanner.scan(goals, now)
        if self._showing is not None or not due:
            return None

        self._showing = due[0]
        logger.info(
            "Showing reminder for goal #%d to user %d (%d due)",
            self._showing.id, self.user_id, len(due),
        )
        return self._showing

    def _release_if_stale(self, goals: list[Goal], now: datetime) -> None:
        shown = self._showing
        if shown is None:
            return

        shown_ms = to_epoch_ms(shown.reminder_time)
        fresh = next((g for g in goals if g.id == shown.id), None)
        if fresh is None:
            reason = "goal is gone"
        elif fresh.completed:
            reason = "goal was completed"
        elif fresh.reminder_time is None or to_epoch_ms(fresh.reminder_time) != shown_ms:
            reason = "reminder time changed"
        elif shown_ms < to_epoch_ms(now - self.scanner.window):
            # Unanswered past the window
            self.scanner.mark_shown(shown)
            reason = "reminder expired unanswered"
        else:
            return

        logger.info(
            "Releasing reminder for goal #%d of user %d: %s",
            shown.id, self.user_id, reason,
        )
        self._showing = None

    def refresh(self, now: datetime | None = None) -> Goal | None:
        """Fetch the user's goals and apply them in one step."""
        generation = self.begin_refresh()
        goals = self._goals.get_goals_by_user(self.user_id)
        return self.apply_goals(generation, goals, now)

    # -- transitions -------------------------------------------------------

    def _require_showing(self, goal_id: int | None) -> Goal:
        goal = self._showing
        if goal is None:
            raise NoActiveReminderError("No reminder is currently showing")
        if goal_id is not None and goal_id != goal.id:
            raise NoActiveReminderError(
                f"Goal {goal_id} is not the reminder currently showing",
            )
        return goal

    def _mutate(self, goal: Goal, **changes) -> Goal:
        try:
            return self._goals.update_goal(goal.id, self.user_id, **changes)
        except Exception as exc:
            logger.error("Reminder action on goal #%d failed: %s", goal.id, exc)
            raise ReminderActionError(f"Couldn't update goal {goal.id}") from exc

    def _finish(self, goal: Goal) -> None:
        self.scanner.mark_shown(goal)
        self._showing = None

    def complete(self, goal_id: int | None = None) -> Goal:
        """Mark the shown goal completed. Recurring goals spawn their next instance."""
        goal = self._require_showing(goal_id)
        try:
            updated, _ = complete_goal(self._goals, goal.id, self.user_id)
        except Exception as exc:
            logger.error("Completing goal #%d from reminder failed: %s", goal.id, exc)
            raise ReminderActionError(f"Couldn't update goal {goal.id}") from exc
        self._finish(goal)
        logger.info("Goal #%d completed from reminder", goal.id)
        return updated

    def snooze(
        self, minutes: int, now: datetime | None = None, goal_id: int | None = None,
    ) -> Goal:
        """Reschedule the shown reminder to ``now + minutes``."""
        if minutes <= 0:
            raise ValueError("Snooze minutes must be positive")
        goal = self._require_showing(goal_id)
        new_time = (now or _utcnow()) + timedelta(minutes=minutes)
        updated = self._mutate(goal, reminder_time=new_time)
        self._finish(goal)
        logger.info("Goal #%d snoozed %d min until %s", goal.id, minutes, new_time.isoformat())
        return updated

    def snooze_until_tomorrow(self, goal_id: int | None = None) -> Goal:
        """Reschedule the shown reminder to the same local time on the next day."""
        goal = self._require_showing(goal_id)
        local = goal.reminder_time.astimezone(ZoneInfo(settings.TIMEZONE))
        new_time = (local + timedelta(days=1)).astimezone(timezone.utc)
        updated = self._mutate(goal, reminder_time=new_time)
        self._finish(goal)
        logger.info("Goal #%d snoozed until %s", goal.id, new_time.isoformat())
        return updated

    def dismiss(self, goal_id: int | None = None) -> Goal:
        """Close the reminder without changing the goal.

        The current reminder value will not fire again; a later change to the
        reminder time will.
        """
        goal = self._require_showing(goal_id)
        self._finish(goal)
        logger.info("Reminder for goal #%d dismissed", goal.id)
        return goal

    def abandon(self) -> None:
        """Return to IDLE without caching, e.g. when delivery failed."""
        self._showing = None

    def sweep(self, now: datetime | None = None) -> int:
        return self.scanner.evict_expired(now or _utcnow())
