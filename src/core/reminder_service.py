"""
Mirai Assistant — Reminder polling.

Owns one NotificationController per user and drives them from the bot's job
queue: a periodic poll that fetches goals and delivers the next due reminder,
an hourly cache sweep, and the button actions of a shown reminder.

This module is provider-agnostic: it depends on GoalPort and NotificationPort
protocols, not on specific implementations.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable

from src.core.notifications import NoActiveReminderError, NotificationController
from src.core.reminder_scan import DEFAULT_WINDOW, ReminderScanner

if TYPE_CHECKING:
    from src.data.models import Goal
    from src.ports.goal_port import GoalPort
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

# Callback actions exposed on a reminder message
ACTIONS = ("complete", "snooze10", "snooze60", "tomorrow", "dismiss")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReminderService:
    """Registry of per-user reminder controllers plus the polling entry points."""

    def __init__(
        self,
        goals: GoalPort,
        notifier: NotificationPort,
        window: timedelta = DEFAULT_WINDOW,
    ) -> None:
        self._goals = goals
        self._notifier = notifier
        self._window = window
        self._controllers: dict[int, NotificationController] = {}

    def controller_for(self, user_id: int) -> NotificationController:
        controller = self._controllers.get(user_id)
        if controller is None:
            controller = NotificationController(
                user_id, self._goals, ReminderScanner(window=self._window),
            )
            self._controllers[user_id] = controller
        return controller

    def forget(self, user_id: int) -> None:
        """Tear down a user's reminder state (e.g. on logout)."""
        if self._controllers.pop(user_id, None) is not None:
            logger.info("Reminder state cleared for user %d", user_id)

    # -- polling -----------------------------------------------------------

    async def poll_user(self, user_id: int, now: datetime | None = None) -> Goal | None:
        """Fetch the user's goals and deliver the next due reminder, if any.

        Delivery failures are logged and the reminder is released so the next
        poll can try again.
        """
        controller = self.controller_for(user_id)
        generation = controller.begin_refresh()
        goals = await asyncio.to_thread(self._goals.get_goals_by_user, user_id)

        goal = controller.apply_goals(generation, goals, now or _utcnow())
        if goal is None:
            return None

        try:
            await self._notifier.send_reminder(user_id, goal)
        except Exception as exc:
            logger.warning(
                "Couldn't deliver reminder for goal #%d to user %d: %s",
                goal.id, user_id, exc,
            )
            controller.abandon()
            return None
        return goal

    async def poll_all(self, user_ids: Iterable[int]) -> int:
        """Poll every user. One failing user does not stop the others.

        Returns how many reminders were delivered.
        """
        delivered = 0
        for user_id in user_ids:
            try:
                if await self.poll_user(user_id) is not None:
                    delivered += 1
            except Exception as exc:
                logger.error("Reminder poll failed for user %d: %s", user_id, exc)
        return delivered

    def sweep_all(self, now: datetime | None = None) -> int:
        """Evict expired dedup entries for every user."""
        now = now or _utcnow()
        return sum(c.sweep(now) for c in self._controllers.values())

    # -- actions -----------------------------------------------------------

    def act(
        self, user_id: int, action: str, goal_id: int, now: datetime | None = None,
    ) -> str:
        """Apply a reminder button action and return a confirmation text.

        Raises NoActiveReminderError if ``goal_id`` is not showing, and
        ReminderActionError if the goal update failed.
        """
        controller = self._controllers.get(user_id)
        if controller is None:
            raise NoActiveReminderError("No reminder is currently showing")

        if action == "complete":
            goal = controller.complete(goal_id=goal_id)
            return f"✅ '{goal.title}' marked as complete."
        if action == "snooze10":
            controller.snooze(10, now=now, goal_id=goal_id)
            return "⏰ Snoozed — I'll remind you again in 10 minutes."
        if action == "snooze60":
            controller.snooze(60, now=now, goal_id=goal_id)
            return "⏰ Snoozed — I'll remind you again in 1 hour."
        if action == "tomorrow":
            controller.snooze_until_tomorrow(goal_id=goal_id)
            return "⏰ Snoozed — I'll remind you at the same time tomorrow."
        if action == "dismiss":
            controller.dismiss(goal_id=goal_id)
            return "🔕 Reminder dismissed."
        raise ValueError(f"Unknown reminder action {action!r}")
