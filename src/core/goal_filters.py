"""Goal views — status classification, filtering and search.

No I/O: this module only transforms data.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from src.data.models import Goal

DUE_SOON_WINDOW = timedelta(days=3)


def is_overdue(goal: Goal, now: datetime) -> bool:
    return not goal.completed and goal.due_date is not None and goal.due_date < now


def is_due_soon(goal: Goal, now: datetime) -> bool:
    """Due within the next three days and not yet overdue."""
    if goal.completed or goal.due_date is None:
        return False
    return now <= goal.due_date <= now + DUE_SOON_WINDOW


def active_goals(goals: Iterable[Goal]) -> list[Goal]:
    return [g for g in goals if not g.completed]


def by_category(goals: Iterable[Goal], category: str) -> list[Goal]:
    wanted = category.strip().lower()
    return [g for g in goals if (g.category or "").lower() == wanted]


def by_priority(goals: Iterable[Goal], priority: str) -> list[Goal]:
    wanted = priority.strip().lower()
    return [g for g in goals if (g.priority or "").lower() == wanted]


def search_goals(goals: Iterable[Goal], term: str) -> list[Goal]:
    """Case-insensitive substring search over title, description, category and tags."""
    needle = term.strip().lower()
    if not needle:
        raise ValueError("Search term is required")

    results = []
    for goal in goals:
        haystacks = [goal.title, goal.description or "", goal.category or "", *goal.tags]
        if any(needle in h.lower() for h in haystacks):
            results.append(goal)
    return results


@dataclass
class GoalStats:
    total: int
    completed: int
    active: int
    overdue: int
    due_soon: int


def summarize(goals: Iterable[Goal], now: datetime) -> GoalStats:
    goals = list(goals)
    return GoalStats(
        total=len(goals),
        completed=sum(1 for g in goals if g.completed),
        active=sum(1 for g in goals if not g.completed),
        overdue=sum(1 for g in goals if is_overdue(g, now)),
        due_soon=sum(1 for g in goals if is_due_soon(g, now)),
    )
