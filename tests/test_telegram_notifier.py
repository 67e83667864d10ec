"""Tests for src.adapters.telegram_notifier — reminder message formatting and sending."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.adapters.telegram_notifier import TelegramNotifier, format_reminder, reminder_keyboard


class TestReminderKeyboard:
    def test_callback_data(self):
        markup = reminder_keyboard(42)
        data = [button.callback_data for row in markup.inline_keyboard for button in row]
        assert data == [
            "reminder:complete:42",
            "reminder:snooze10:42",
            "reminder:snooze60:42",
            "reminder:tomorrow:42",
            "reminder:dismiss:42",
        ]


class TestFormatReminder:
    def test_includes_details(self, make_goal):
        goal = make_goal(
            1, title="Call mom", description="Birthday plans", priority="high",
            reminder_time=datetime(2025, 3, 10, 18, 0, tzinfo=timezone.utc),
            category="family",
        )
        text = format_reminder(goal)
        assert "Call mom" in text
        assert "Birthday plans" in text
        assert "2025-03-10 18:00" in text
        assert "high" in text
        assert "Category: family" in text

    def test_escapes_markdown_in_user_text(self, make_goal):
        goal = make_goal(1, title="call_mom", description="a*b [draft]", category="home_admin")
        text = format_reminder(goal)
        assert "call\\_mom" in text
        assert "a\\*b \\[draft]" in text
        assert "home\\_admin" in text
        # Only the label is formatted
        assert text.count("*") - text.count("\\*") == 2

    def test_minimal(self, make_goal):
        text = format_reminder(make_goal(1, title="Stretch"))
        assert text.startswith("🔔 *Reminder:* Stretch")
        assert "Due:" not in text


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_send_reminder(self, make_goal):
        bot = MagicMock()
        bot.send_message = AsyncMock()

        await TelegramNotifier(bot).send_reminder(12345, make_goal(7, title="Stretch"))

        kwargs = bot.send_message.call_args.kwargs
        assert kwargs["chat_id"] == 12345
        assert kwargs["parse_mode"] == "Markdown"
        assert kwargs["reply_markup"].inline_keyboard[0][0].callback_data == "reminder:complete:7"

    @pytest.mark.asyncio
    async def test_send_reminder_with_underscore_title(self, make_goal):
        bot = MagicMock()
        bot.send_message = AsyncMock()

        await TelegramNotifier(bot).send_reminder(12345, make_goal(8, title="call_mom"))

        assert "call\\_mom" in bot.send_message.call_args.kwargs["text"]

    @pytest.mark.asyncio
    async def test_send_message(self):
        bot = MagicMock()
        bot.send_message = AsyncMock()
        await TelegramNotifier(bot).send_message(12345, "hello")
        bot.send_message.assert_awaited_once_with(chat_id=12345, text="hello")
