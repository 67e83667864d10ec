"""Goal extraction — turns "my goal is ..." sentences from the goal chat into goals.

A deliberately simple pattern match: the goal lane creates a goal when the user
states one explicitly, and picks up a coarse due date from phrases such as
"by next week" or "by March".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.core.recurrence import add_months

logger = logging.getLogger(__name__)

_GOAL_RE = re.compile(r"(my goal is|my goals are|i want to) (.*?)\.", re.IGNORECASE)
_BY_DATE_RE = re.compile(
    r"by (tomorrow|next week|next month|end of month|next year|january|february|"
    r"march|april|may|june|july|august|september|october|november|december)",
    re.IGNORECASE,
)
_MONTHS = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]

_MIN_DESCRIPTION = 5
_MAX_TITLE = 50


@dataclass
class ExtractedGoal:
    title: str
    description: str
    due_date: datetime | None = None


def parse_due_phrase(text: str, now: datetime) -> datetime | None:
    """Resolve a "by <when>" phrase relative to ``now``.

    Month names resolve to the 15th of that month, next year if the month has
    already passed.
    """
    match = _BY_DATE_RE.search(text)
    if match is None:
        return None

    phrase = match.group(1).lower()
    if phrase == "tomorrow":
        return now + timedelta(days=1)
    if phrase == "next week":
        return now + timedelta(days=7)
    if phrase in ("next month", "end of month"):
        first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return add_months(first, 1)
    if phrase == "next year":
        return add_months(now, 12)

    month = _MONTHS.index(phrase) + 1
    year = now.year + 1 if month < now.month else now.year
    return now.replace(
        year=year, month=month, day=15, hour=0, minute=0, second=0, microsecond=0,
    )


def extract_goal(text: str, now: datetime) -> ExtractedGoal | None:
    """Return the goal stated in ``text``, or None if there is none."""
    match = _GOAL_RE.search(text)
    if match is None:
        return None

    description = match.group(2).strip()
    if len(description) <= _MIN_DESCRIPTION:
        return None

    due = parse_due_phrase(text, now)
    logger.debug("Extracted goal %r (due %s)", description, due)
    return ExtractedGoal(
        title=description[:_MAX_TITLE],
        description=description,
        due_date=due,
    )
