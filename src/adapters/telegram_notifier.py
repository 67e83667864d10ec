"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol.
Reminders are sent with inline buttons whose callback data is
``reminder:<action>:<goal_id>``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.helpers import escape_markdown

from src.config import settings

if TYPE_CHECKING:
    from src.data.models import Goal

logger = logging.getLogger(__name__)

_PRIORITY_LABELS = {"high": "🔴 high", "medium": "🟡 medium", "low": "🟢 low"}


def reminder_keyboard(goal_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("✅ Complete", callback_data=f"reminder:complete:{goal_id}")],
        [
            InlineKeyboardButton("10 min", callback_data=f"reminder:snooze10:{goal_id}"),
            InlineKeyboardButton("1 hour", callback_data=f"reminder:snooze60:{goal_id}"),
            InlineKeyboardButton("Tomorrow", callback_data=f"reminder:tomorrow:{goal_id}"),
        ],
        [InlineKeyboardButton("Dismiss", callback_data=f"reminder:dismiss:{goal_id}")],
    ])


def format_reminder(goal: Goal) -> str:
    """Markdown body of a reminder message. User text is escaped."""
    tz = ZoneInfo(settings.TIMEZONE)
    lines = [f"🔔 *Reminder:* {escape_markdown(goal.title)}"]
    if goal.description and goal.description != goal.title:
        lines.append(escape_markdown(goal.description))
    if goal.reminder_time is not None:
        lines.append(f"Time: {goal.reminder_time.astimezone(tz):%Y-%m-%d %H:%M}")
    if goal.due_date is not None:
        lines.append(f"Due: {goal.due_date.astimezone(tz):%Y-%m-%d}")
    lines.append(f"Priority: {_PRIORITY_LABELS.get(goal.priority, goal.priority)}")
    if goal.category:
        lines.append(f"Category: {escape_markdown(goal.category)}")
    return "\n".join(lines)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, user_id: int, text: str) -> None:
        await self._bot.send_message(chat_id=user_id, text=text)

    async def send_reminder(self, user_id: int, goal: Goal) -> None:
        await self._bot.send_message(
            chat_id=user_id,
            text=format_reminder(goal),
            parse_mode="Markdown",
            reply_markup=reminder_keyboard(goal.id),
        )
        logger.info("Reminder for goal #%d sent to user %d", goal.id, user_id)
