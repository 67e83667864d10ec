"""Recurring goals — computes the next instance when one is completed.

`next_occurrence` only transforms data; `complete_goal` applies a completion
through a GoalPort.
"""

from __future__ import annotations

import calendar
import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.data.models import Goal
    from src.ports.goal_port import GoalPort

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole months, clamping the day to the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_due_date(
    current: datetime, recurring_type: str | None, interval: int | None = 1,
) -> datetime:
    """Next due date for a recurrence. Unknown and "custom" types count days."""
    step = interval or 1
    if recurring_type == "weekly":
        return current + timedelta(weeks=step)
    if recurring_type == "monthly":
        return add_months(current, step)
    return current + timedelta(days=step)


_EVERY_RE = re.compile(r"^every\s+(\d+)\s+(day|week|month)s?$")
_EVERY_TYPES = {"day": "custom", "week": "weekly", "month": "monthly"}


def parse_recurrence(text: str) -> tuple[str, int] | None:
    """Read "daily", "weekly", "monthly" or "every N days/weeks/months".

    Returns ``(recurring_type, interval)`` or None if the text is not a
    recurrence.
    """
    text = " ".join(text.lower().split())
    if text in ("daily", "weekly", "monthly"):
        return text, 1
    match = _EVERY_RE.match(text)
    if match is None or int(match.group(1)) <= 0:
        return None
    return _EVERY_TYPES[match.group(2)], int(match.group(1))


def next_occurrence(goal: Goal) -> dict[str, Any] | None:
    """Fields for the instance that follows ``goal``, or None.

    Only recurring goals with a due date repeat, and never past their
    recurrence end date. The reminder keeps its time of day on the new due
    date.
    """
    if not goal.is_recurring or goal.due_date is None:
        return None

    recurring_type = goal.recurring_type or "daily"
    interval = goal.recurring_interval or 1
    due = next_due_date(goal.due_date, recurring_type, interval)

    if goal.recurring_end_date is not None and due > goal.recurring_end_date:
        logger.info("Goal #%d reached its recurrence end date", goal.id)
        return None

    reminder = None
    if goal.reminder_time is not None:
        source = goal.reminder_time
        if source.tzinfo is not None and due.tzinfo is not None:
            source = source.astimezone(due.tzinfo)
        reminder = due.replace(
            hour=source.hour,
            minute=source.minute,
            second=0,
            microsecond=0,
        )

    return {
        "title": goal.title,
        "description": goal.description,
        "completed": False,
        "due_date": due,
        "priority": goal.priority if goal.priority in ("low", "medium", "high") else "medium",
        "category": goal.category,
        "tags": list(goal.tags),
        "reminder_time": reminder,
        "is_recurring": True,
        "recurring_type": recurring_type,
        "recurring_interval": interval,
        "recurring_end_date": goal.recurring_end_date,
    }


def complete_goal(goals: GoalPort, goal_id: int, user_id: int) -> tuple[Goal, Goal | None]:
    """Mark a goal completed and create its next occurrence if it recurs.

    A goal that is already completed is returned unchanged and spawns nothing.
    Errors from the completion itself propagate. A failure to create the next
    occurrence is logged; the completion stands.
    """
    current = goals.get_goal(goal_id, user_id)
    if current is None:
        raise ValueError(f"Goal {goal_id} not found")
    if current.completed:
        logger.info("Goal #%d is already completed", goal_id)
        return current, None

    updated = goals.update_goal(goal_id, user_id, completed=True)

    follow_up = next_occurrence(updated)
    if follow_up is None:
        return updated, None
    try:
        created = goals.create_goal(user_id, **follow_up)
    except Exception as exc:
        logger.error("Couldn't create next occurrence of goal #%d: %s", goal_id, exc)
        return updated, None
    logger.info("Next occurrence of goal #%d created as #%d", goal_id, created.id)
    return updated, created
