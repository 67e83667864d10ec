"""Goal port — abstract interface for reading and mutating goals.

The reminder controller depends on this protocol, never on SQLite directly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from src.data.models import Goal


class GoalPort(Protocol):
    """Goal queries and mutations used by core modules."""

    def get_goal(self, goal_id: int, user_id: int) -> Goal | None: ...

    def get_goals_by_user(self, user_id: int) -> list[Goal]: ...

    def update_goal(self, goal_id: int, user_id: int, **changes: Any) -> Goal: ...

    def create_goal(self, user_id: int, title: str, **fields: Any) -> Goal: ...
