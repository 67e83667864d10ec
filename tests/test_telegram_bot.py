"""Tests for src.bot.telegram_bot — Telegram bot handlers.

Tests command handlers, the /addgoal conversation flow, reminder buttons and
authorization. Storage uses temp SQLite files; the LLM is mocked.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from telegram.ext import ConversationHandler

from src.bot.telegram_bot import (
    GOAL_CATEGORY,
    GOAL_DUE,
    GOAL_PRIORITY,
    GOAL_RECURRENCE,
    GOAL_REMINDER,
    GOAL_TITLE,
    _clear_goal_data,
    parse_category_tags,
    parse_local_datetime,
)
from src.core.conversation import ConversationStore
from src.core.reminder_service import ReminderService
from src.core.session_keys import Lane, legacy_session_key
from src.core.timeline import Timeline

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Tests for parse_local_datetime (TIMEZONE=UTC in tests)
# ---------------------------------------------------------------------------


class TestParseLocalDatetime:
    def test_full_datetime(self):
        assert parse_local_datetime("2025-03-11 09:30", NOW) == datetime(2025, 3, 11, 9, 30, tzinfo=timezone.utc)

    def test_date_only_defaults_to_nine(self):
        assert parse_local_datetime("2025-03-11", NOW) == datetime(2025, 3, 11, 9, 0, tzinfo=timezone.utc)

    def test_time_today(self):
        assert parse_local_datetime("18:45", NOW) == datetime(2025, 3, 10, 18, 45, tzinfo=timezone.utc)

    def test_relative_minutes(self):
        assert parse_local_datetime("+30", NOW) == NOW + timedelta(minutes=30)
        assert parse_local_datetime("+30m", NOW) == NOW + timedelta(minutes=30)

    def test_relative_hours(self):
        assert parse_local_datetime("+2h", NOW) == NOW + timedelta(hours=2)

    def test_invalid(self):
        assert parse_local_datetime("whenever", NOW) is None
        assert parse_local_datetime("25:99", NOW) is None


class TestParseCategoryTags:
    def test_category_and_tags(self):
        assert parse_category_tags("home admin #urgent #q3") == ("home admin", ["urgent", "q3"])

    def test_tags_only(self):
        assert parse_category_tags("#fitness") == (None, ["fitness"])

    def test_bare_hash_ignored(self):
        assert parse_category_tags("work #") == ("work", [])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_update(text="", user_id=12345):
    """Create a mock Update with a text message from an authorized user."""
    update = MagicMock()
    update.message.text = text
    update.effective_user.id = user_id
    update.effective_user.username = "alice"
    update.effective_user.first_name = "Alice"
    update.effective_chat.id = user_id
    update.message.reply_text = AsyncMock()
    return update


@pytest.fixture
def context(tmp_db_path, user_db, goal_db, note_db, conversation_db):
    """A mock context wired to temp-file DBs, like build_app does."""
    notifier = MagicMock()
    notifier.send_reminder = AsyncMock()
    ctx = MagicMock()
    ctx.args = []
    ctx.user_data = {}
    ctx.bot.send_chat_action = AsyncMock()
    ctx.bot_data = {
        "user_db": user_db,
        "conversation": ConversationStore(conversation_db, salt="test"),
        "goal_db": goal_db,
        "note_db": note_db,
        "notifier": notifier,
        "reminders": ReminderService(goal_db, notifier),
    }
    return ctx


def _replies(update):
    return [c.args[0] for c in update.message.reply_text.call_args_list]


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unauthorized_user_is_ignored(self, context):
        from src.bot.telegram_bot import cmd_help

        update = _make_update(user_id=99999)
        await cmd_help(update, context)
        update.message.reply_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_authorized_user_gets_response(self, context):
        from src.bot.telegram_bot import cmd_help

        update = _make_update()
        await cmd_help(update, context)
        update.message.reply_text.assert_called_once()


# ---------------------------------------------------------------------------
# Account commands
# ---------------------------------------------------------------------------


class TestStart:
    @pytest.mark.asyncio
    async def test_registers_and_onboards(self, context, user_db):
        from src.bot.telegram_bot import cmd_start

        await cmd_start(_make_update(), context)

        user = user_db.get_user(12345)
        assert user.username == "alice"
        assert user.initial_login_at is not None
        assert user.onboarding_completed_at is not None

    @pytest.mark.asyncio
    async def test_second_start_keeps_user(self, context, user_db):
        from src.bot.telegram_bot import cmd_start

        await cmd_start(_make_update(), context)
        first_login = user_db.get_user(12345).initial_login_at
        await cmd_start(_make_update(), context)
        assert user_db.get_user(12345).initial_login_at == first_login


class TestLogout:
    @pytest.mark.asyncio
    async def test_clears_user_data(self, context):
        from src.bot.telegram_bot import cmd_logout

        context.user_data["lane"] = Lane.GOAL
        await cmd_logout(_make_update(), context)
        assert context.user_data == {}


# ---------------------------------------------------------------------------
# Lanes and chat
# ---------------------------------------------------------------------------


class TestLane:
    @pytest.mark.asyncio
    async def test_switch_lane(self, context):
        from src.bot.telegram_bot import cmd_lane

        context.args = ["notes"]
        await cmd_lane(_make_update(), context)
        assert context.user_data["lane"] is Lane.NOTES

    @pytest.mark.asyncio
    async def test_unknown_lane(self, context):
        from src.bot.telegram_bot import cmd_lane

        context.args = ["diary"]
        update = _make_update()
        await cmd_lane(update, context)
        assert "lane" not in context.user_data
        assert "Unknown lane" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_show_current_lane(self, context):
        from src.bot.telegram_bot import cmd_lane

        update = _make_update()
        await cmd_lane(update, context)
        assert "general" in _replies(update)[0]


class TestHandleText:
    @pytest.mark.asyncio
    async def test_chat_in_active_lane(self, context):
        from src.bot.telegram_bot import handle_text

        context.user_data["lane"] = Lane.NOTES
        update = _make_update("what did I write?")
        with patch("src.core.assistant.complete", new_callable=AsyncMock, return_value="You wrote about trees."):
            await handle_text(update, context)

        assert _replies(update) == ["You wrote about trees."]
        store = context.bot_data["conversation"]
        assert len(store.list_messages(12345, store.key_for(12345, Lane.NOTES))) == 2
        assert store.list_messages(12345, store.key_for(12345, Lane.GENERAL)) == []

        timeline = context.user_data["timelines"]["notes"]
        assert timeline.pending == []
        assert len(timeline.entries) == 2

    @pytest.mark.asyncio
    async def test_goal_lane_announces_created_goal(self, context, goal_db):
        from src.bot.telegram_bot import handle_text

        context.user_data["lane"] = Lane.GOAL
        update = _make_update("My goal is to read twelve books.")
        with patch("src.core.assistant.complete", new_callable=AsyncMock, return_value="Nice!"):
            await handle_text(update, context)

        assert [g.title for g in goal_db.get_goals_by_user(12345)] == ["to read twelve books"]
        assert "Added goal" in _replies(update)[1]

    @pytest.mark.asyncio
    async def test_failure_discards_pending(self, context):
        from src.bot.telegram_bot import handle_text

        update = _make_update("hello")
        with patch("src.core.assistant.chat_turn", new_callable=AsyncMock, side_effect=RuntimeError("db")):
            await handle_text(update, context)

        assert context.user_data["timelines"]["general"].entries == []
        assert "something went wrong" in _replies(update)[0]


class TestHistory:
    @pytest.mark.asyncio
    async def test_shows_active_lane_only(self, context):
        from src.bot.telegram_bot import cmd_history

        store = context.bot_data["conversation"]
        store.append_message(12345, store.key_for(12345, "general"), "general msg", False)
        store.append_message(12345, store.key_for(12345, "goal"), "goal msg", False)

        update = _make_update()
        await cmd_history(update, context)

        text = _replies(update)[0]
        assert "You: general msg" in text
        assert "goal msg" not in text

    @pytest.mark.asyncio
    async def test_empty(self, context):
        from src.bot.telegram_bot import cmd_history

        context.user_data["lane"] = Lane.NOTES
        update = _make_update()
        await cmd_history(update, context)
        assert _replies(update) == ["No messages in the notes lane yet."]


class TestClearAndSave:
    @pytest.mark.asyncio
    async def test_clear_only_active_lane(self, context):
        from src.bot.telegram_bot import cmd_clear

        store = context.bot_data["conversation"]
        store.append_message(12345, store.key_for(12345, "general"), "g", False)
        store.append_message(12345, store.key_for(12345, "goal"), "x", False)

        update = _make_update()
        await cmd_clear(update, context)

        assert store.list_messages(12345, store.key_for(12345, "general")) == []
        assert len(store.list_messages(12345, store.key_for(12345, "goal"))) == 1
        assert "Cleared 1" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_savechat_creates_note(self, context, note_db):
        from src.bot.telegram_bot import cmd_savechat

        store = context.bot_data["conversation"]
        key = store.key_for(12345, "general")
        store.append_message(12345, key, "hello", False)
        store.append_message(12345, key, "hi!", True)

        context.args = ["My", "chat"]
        await cmd_savechat(_make_update(), context)

        notes = note_db.list_notes(12345)
        assert notes[0].title == "My chat"
        assert "You: hello" in notes[0].content

    @pytest.mark.asyncio
    async def test_savechat_nothing_to_save(self, context, note_db):
        from src.bot.telegram_bot import cmd_savechat

        update = _make_update()
        await cmd_savechat(update, context)
        assert note_db.list_notes(12345) == []
        assert _replies(update) == ["Nothing to save yet."]


# ---------------------------------------------------------------------------
# /addgoal conversation
# ---------------------------------------------------------------------------


class TestAddgoalFlow:
    @pytest.mark.asyncio
    async def test_full_flow(self, context, goal_db):
        from src.bot.telegram_bot import (
            addgoal_category,
            addgoal_due,
            addgoal_priority,
            addgoal_recurrence,
            addgoal_reminder,
            addgoal_title,
            cmd_addgoal,
        )

        assert await cmd_addgoal(_make_update(), context) == GOAL_TITLE
        assert await addgoal_title(_make_update("Renew passport"), context) == GOAL_DUE
        assert await addgoal_due(_make_update("2025-04-01"), context) == GOAL_REMINDER
        assert await addgoal_reminder(_make_update("2025-03-31 18:00"), context) == GOAL_PRIORITY
        assert await addgoal_priority(_make_update("High"), context) == GOAL_RECURRENCE
        assert await addgoal_recurrence(_make_update("every 2 weeks"), context) == GOAL_CATEGORY
        update = _make_update("admin #travel")
        result = await addgoal_category(update, context)

        assert result == ConversationHandler.END
        goal = goal_db.get_goals_by_user(12345)[0]
        assert goal.title == "Renew passport"
        assert goal.priority == "high"
        assert goal.reminder_time == datetime(2025, 3, 31, 18, 0, tzinfo=timezone.utc)
        assert goal.is_recurring
        assert (goal.recurring_type, goal.recurring_interval) == ("weekly", 2)
        assert goal.category == "admin"
        assert goal.tags == ["travel"]
        assert "Repeats every 2 weeks" in _replies(update)[-1]
        assert "goal_title" not in context.user_data
        assert "goal_recurrence" not in context.user_data

    @pytest.mark.asyncio
    async def test_skip_optional_steps(self, context, goal_db):
        from src.bot.telegram_bot import (
            addgoal_category,
            addgoal_due,
            addgoal_priority,
            addgoal_reminder,
        )

        context.user_data["goal_title"] = "Learn guitar"
        assert await addgoal_due(_make_update("skip"), context) == GOAL_REMINDER
        assert await addgoal_reminder(_make_update("skip"), context) == GOAL_PRIORITY
        # Without a due date there is nothing to repeat
        assert await addgoal_priority(_make_update("low"), context) == GOAL_CATEGORY
        assert await addgoal_category(_make_update("skip"), context) == ConversationHandler.END

        goal = goal_db.get_goals_by_user(12345)[0]
        assert goal.due_date is None
        assert goal.reminder_time is None
        assert not goal.is_recurring
        assert goal.category is None
        assert goal.tags == []

    @pytest.mark.asyncio
    async def test_no_recurrence(self, context, goal_db):
        from src.bot.telegram_bot import addgoal_category, addgoal_recurrence

        context.user_data.update(goal_title="Dentist", goal_due=NOW, goal_priority="medium")
        assert await addgoal_recurrence(_make_update("no"), context) == GOAL_CATEGORY
        await addgoal_category(_make_update("health"), context)

        goal = goal_db.get_goals_by_user(12345)[0]
        assert not goal.is_recurring
        assert goal.recurring_type is None
        assert goal.category == "health"

    @pytest.mark.asyncio
    async def test_invalid_inputs_retry(self, context):
        from src.bot.telegram_bot import (
            addgoal_due,
            addgoal_priority,
            addgoal_recurrence,
            addgoal_reminder,
        )

        context.user_data["goal_title"] = "X"
        assert await addgoal_due(_make_update("someday"), context) == GOAL_DUE
        assert await addgoal_reminder(_make_update("later"), context) == GOAL_REMINDER
        assert await addgoal_priority(_make_update("urgent"), context) == GOAL_PRIORITY
        assert await addgoal_recurrence(_make_update("yearly"), context) == GOAL_RECURRENCE

    def test_clear_goal_data(self):
        context = MagicMock()
        context.user_data = {
            "goal_title": "X", "goal_due": None, "goal_reminder": None,
            "goal_priority": "low", "goal_recurrence": ("daily", 1), "lane": "keep",
        }
        _clear_goal_data(context)
        assert context.user_data == {"lane": "keep"}


# ---------------------------------------------------------------------------
# Goal and note commands
# ---------------------------------------------------------------------------


class TestGoalCommands:
    @pytest.mark.asyncio
    async def test_goals_lists_active(self, context, goal_db):
        from src.bot.telegram_bot import cmd_goals

        goal_db.create_goal(12345, "Active one")
        done = goal_db.create_goal(12345, "Finished one")
        goal_db.update_goal(done.id, 12345, completed=True)

        update = _make_update()
        await cmd_goals(update, context)

        text = _replies(update)[0]
        assert "Active one" in text
        assert "Finished one" not in text
        assert "1 completed" in text

    @pytest.mark.asyncio
    async def test_no_goals(self, context):
        from src.bot.telegram_bot import cmd_goals

        update = _make_update()
        await cmd_goals(update, context)
        assert "No active goals" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_done(self, context, goal_db):
        from src.bot.telegram_bot import cmd_done

        goal = goal_db.create_goal(12345, "Pay rent")
        context.args = [str(goal.id)]
        await cmd_done(_make_update(), context)
        assert goal_db.get_goal(goal.id, 12345).completed

    @pytest.mark.asyncio
    async def test_done_bad_id(self, context):
        from src.bot.telegram_bot import cmd_done

        context.args = ["abc"]
        update = _make_update()
        await cmd_done(update, context)
        assert "Usage" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_done_missing_goal(self, context):
        from src.bot.telegram_bot import cmd_done

        context.args = ["999"]
        update = _make_update()
        await cmd_done(update, context)
        assert "Couldn't complete goal 999" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_deletegoal(self, context, goal_db):
        from src.bot.telegram_bot import cmd_deletegoal

        goal = goal_db.create_goal(12345, "Temp")
        context.args = [str(goal.id)]
        await cmd_deletegoal(_make_update(), context)
        assert goal_db.get_goal(goal.id, 12345) is None

    @pytest.mark.asyncio
    async def test_search(self, context, goal_db):
        from src.bot.telegram_bot import cmd_search

        goal_db.create_goal(12345, "Run a marathon")
        goal_db.create_goal(12345, "Read")
        context.args = ["marathon"]
        update = _make_update()
        await cmd_search(update, context)
        text = _replies(update)[0]
        assert "Run a marathon" in text
        assert "Read" not in text.split("\n", 1)[1]


class TestNoteCommands:
    @pytest.mark.asyncio
    async def test_note_and_list(self, context, note_db):
        from src.bot.telegram_bot import cmd_note, cmd_notes

        context.args = "Ideas | build a treehouse".split()
        await cmd_note(_make_update(), context)
        note = note_db.list_notes(12345)[0]
        assert (note.title, note.content) == ("Ideas", "build a treehouse")

        context.args = []
        update = _make_update()
        await cmd_notes(update, context)
        assert "Ideas" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_note_usage(self, context, note_db):
        from src.bot.telegram_bot import cmd_note

        context.args = ["no", "separator"]
        update = _make_update()
        await cmd_note(update, context)
        assert note_db.list_notes(12345) == []
        assert "Usage" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_deletenote(self, context, note_db):
        from src.bot.telegram_bot import cmd_deletenote

        note = note_db.create_note(12345, "Temp", "x")
        context.args = [str(note.id)]
        await cmd_deletenote(_make_update(), context)
        assert note_db.get_note(note.id, 12345) is None


# ---------------------------------------------------------------------------
# Reminder buttons
# ---------------------------------------------------------------------------


def _make_callback(data, user_id=12345):
    update = MagicMock()
    update.callback_query.data = data
    update.callback_query.from_user.id = user_id
    update.callback_query.answer = AsyncMock()
    update.callback_query.edit_message_text = AsyncMock()
    update.callback_query.message.reply_text = AsyncMock()
    return update


class TestReminderCallback:
    async def _show_reminder(self, context, goal_db):
        goal = goal_db.create_goal(
            12345, "Water plants",
            reminder_time=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        await context.bot_data["reminders"].poll_user(12345)
        return goal

    @pytest.mark.asyncio
    async def test_dismiss_schedules_recheck(self, context, goal_db):
        from src.bot.telegram_bot import _handle_reminder_callback

        goal = await self._show_reminder(context, goal_db)
        update = _make_callback(f"reminder:dismiss:{goal.id}")

        await _handle_reminder_callback(update, context)

        update.callback_query.edit_message_text.assert_awaited_once_with("🔕 Reminder dismissed.")
        context.job_queue.run_once.assert_called_once()
        assert context.job_queue.run_once.call_args.kwargs["data"] == 12345

    @pytest.mark.asyncio
    async def test_snooze_updates_goal(self, context, goal_db):
        from src.bot.telegram_bot import _handle_reminder_callback

        goal = await self._show_reminder(context, goal_db)
        await _handle_reminder_callback(_make_callback(f"reminder:snooze10:{goal.id}"), context)

        assert goal_db.get_goal(goal.id, 12345).reminder_time > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_stale_button(self, context):
        from src.bot.telegram_bot import _handle_reminder_callback

        update = _make_callback("reminder:complete:5")
        await _handle_reminder_callback(update, context)

        update.callback_query.edit_message_text.assert_awaited_once_with(
            "This reminder is no longer active.",
        )
        context.job_queue.run_once.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_action_keeps_buttons(self, context, goal_db):
        from src.bot.telegram_bot import _handle_reminder_callback

        goal = await self._show_reminder(context, goal_db)
        goal_db.delete_goal(goal.id, 12345)
        update = _make_callback(f"reminder:snooze60:{goal.id}")

        await _handle_reminder_callback(update, context)

        update.callback_query.edit_message_text.assert_not_called()
        update.callback_query.message.reply_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unauthorized_ignored(self, context):
        from src.bot.telegram_bot import _handle_reminder_callback

        update = _make_callback("reminder:dismiss:1", user_id=99999)
        await _handle_reminder_callback(update, context)
        update.callback_query.edit_message_text.assert_not_called()


class TestReminderJobs:
    @pytest.mark.asyncio
    async def test_poll_job_only_allowed_registered_users(self, context, user_db):
        from src.bot.telegram_bot import _reminder_poll_job

        user_db.add_user(12345, "alice")
        user_db.add_user(99999, "stranger")
        reminders = MagicMock()
        reminders.poll_all = AsyncMock(return_value=0)
        context.bot_data["reminders"] = reminders

        await _reminder_poll_job(context)

        reminders.poll_all.assert_awaited_once_with([12345])

    @pytest.mark.asyncio
    async def test_sweep_job(self, context):
        from src.bot.telegram_bot import _reminder_sweep_job

        reminders = MagicMock()
        reminders.sweep_all.return_value = 3
        context.bot_data["reminders"] = reminders

        await _reminder_sweep_job(context)

        reminders.sweep_all.assert_called_once()


# ---------------------------------------------------------------------------
# Legacy history, timeline-backed history, filters and escaping
# ---------------------------------------------------------------------------


class TestLegacyAdoption:
    @pytest.mark.asyncio
    async def test_start_adopts_username_keyed_history(self, context, conversation_db):
        from src.bot.telegram_bot import cmd_start

        old_key = legacy_session_key(12345, "alice", Lane.GOAL)
        conversation_db.create_session(12345, old_key)
        conversation_db.create_message(12345, old_key, "old goal chat", False)

        update = _make_update()
        await cmd_start(update, context)

        store = context.bot_data["conversation"]
        moved = store.list_messages(12345, store.key_for(12345, Lane.GOAL))
        assert [m.content for m in moved] == ["old goal chat"]
        assert "Restored 1 earlier messages" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_start_without_legacy_history(self, context):
        from src.bot.telegram_bot import cmd_start

        update = _make_update()
        await cmd_start(update, context)
        assert "Restored" not in _replies(update)[0]


class TestTimelineHistory:
    @pytest.mark.asyncio
    async def test_in_flight_message_shown(self, context):
        from src.bot.telegram_bot import cmd_history

        timeline = Timeline()
        timeline.add_pending("still sending", NOW)
        context.user_data["timelines"] = {"general": timeline}

        update = _make_update()
        await cmd_history(update, context)
        assert "[sending…] You: still sending" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_timeline_capped_at_history_limit(self, context):
        from src.bot.telegram_bot import handle_text
        from src.config import settings

        store = context.bot_data["conversation"]
        key = store.key_for(12345, Lane.GENERAL)
        for i in range(settings.CHAT_HISTORY_LIMIT):
            store.append_message(12345, key, f"m{i}", False)

        with patch("src.core.assistant.complete", new_callable=AsyncMock, return_value="ok"):
            await handle_text(_make_update("one more"), context)

        timeline = context.user_data["timelines"]["general"]
        assert len(timeline.entries) == settings.CHAT_HISTORY_LIMIT
        assert timeline.entries[-1].content == "ok"


class TestGoalFilters:
    @pytest.mark.asyncio
    async def test_filter_by_priority(self, context, goal_db):
        from src.bot.telegram_bot import cmd_goals

        goal_db.create_goal(12345, "Urgent thing", priority="high")
        goal_db.create_goal(12345, "Someday thing", priority="low")
        context.args = ["high"]
        update = _make_update()
        await cmd_goals(update, context)

        text = _replies(update)[0]
        assert "Urgent thing" in text
        assert "Someday thing" not in text

    @pytest.mark.asyncio
    async def test_filter_by_category(self, context, goal_db):
        from src.bot.telegram_bot import cmd_goals

        goal_db.create_goal(12345, "Gym", category="Health")
        goal_db.create_goal(12345, "Taxes", category="admin")
        context.args = ["health"]
        update = _make_update()
        await cmd_goals(update, context)

        text = _replies(update)[0]
        assert "Gym" in text
        assert "Taxes" not in text

    @pytest.mark.asyncio
    async def test_filter_without_matches(self, context, goal_db):
        from src.bot.telegram_bot import cmd_goals

        goal_db.create_goal(12345, "Gym", category="health")
        context.args = ["travel"]
        update = _make_update()
        await cmd_goals(update, context)
        assert _replies(update) == ["No active goals match 'travel'."]

    @pytest.mark.asyncio
    async def test_titles_escaped_for_markdown(self, context, goal_db):
        from src.bot.telegram_bot import cmd_goals, cmd_search

        goal_db.create_goal(12345, "call_mom")
        update = _make_update()
        await cmd_goals(update, context)
        assert "call\\_mom" in _replies(update)[0]

        context.args = ["call_mom"]
        update = _make_update()
        await cmd_search(update, context)
        assert "call\\_mom" in _replies(update)[0]

    @pytest.mark.asyncio
    async def test_done_twice_creates_one_follow_up(self, context, goal_db):
        from src.bot.telegram_bot import cmd_done

        goal = goal_db.create_goal(
            12345, "Stretch", due_date=NOW, is_recurring=True, recurring_type="daily",
        )
        context.args = [str(goal.id)]
        first = _make_update()
        await cmd_done(first, context)
        await cmd_done(_make_update(), context)

        assert len(goal_db.get_goals_by_user(12345)) == 2
        assert "Next occurrence due 2025-03-11" in _replies(first)[0]


class TestEditNote:
    @pytest.mark.asyncio
    async def test_edit_content(self, context, note_db):
        from src.bot.telegram_bot import cmd_editnote

        note = note_db.create_note(12345, "Ideas", "v1")
        context.args = [str(note.id), "build", "a", "shed"]
        await cmd_editnote(_make_update(), context)

        updated = note_db.get_note(note.id, 12345)
        assert (updated.title, updated.content) == ("Ideas", "build a shed")

    @pytest.mark.asyncio
    async def test_edit_title_and_content(self, context, note_db):
        from src.bot.telegram_bot import cmd_editnote

        note = note_db.create_note(12345, "Ideas", "v1")
        context.args = [str(note.id), "Plans", "|", "v2"]
        await cmd_editnote(_make_update(), context)

        updated = note_db.get_note(note.id, 12345)
        assert (updated.title, updated.content) == ("Plans", "v2")

    @pytest.mark.asyncio
    async def test_missing_note(self, context):
        from src.bot.telegram_bot import cmd_editnote

        context.args = ["999", "text"]
        update = _make_update()
        await cmd_editnote(update, context)
        assert _replies(update) == ["Note 999 not found."]

    @pytest.mark.asyncio
    async def test_usage(self, context):
        from src.bot.telegram_bot import cmd_editnote

        context.args = ["1"]
        update = _make_update()
        await cmd_editnote(update, context)
        assert "Usage" in _replies(update)[0]


class TestReminderActionThread:
    @pytest.mark.asyncio
    async def test_action_runs_off_the_event_loop(self, context):
        from src.bot.telegram_bot import _handle_reminder_callback

        reminders = context.bot_data["reminders"]
        update = _make_callback("reminder:dismiss:7")
        with patch(
            "src.bot.telegram_bot.asyncio.to_thread",
            new_callable=AsyncMock, return_value="🔕 Reminder dismissed.",
        ) as to_thread:
            await _handle_reminder_callback(update, context)

        to_thread.assert_awaited_once_with(reminders.act, 12345, "dismiss", 7)
        update.callback_query.edit_message_text.assert_awaited_once_with("🔕 Reminder dismissed.")

    @pytest.mark.asyncio
    async def test_deleted_reminder_gives_way_to_next(self, context, goal_db):
        reminders = context.bot_data["reminders"]
        now = datetime.now(timezone.utc)
        first = goal_db.create_goal(12345, "First", reminder_time=now - timedelta(minutes=3))
        second = goal_db.create_goal(12345, "Second", reminder_time=now - timedelta(minutes=1))
        assert (await reminders.poll_user(12345)).id == first.id

        goal_db.delete_goal(first.id, 12345)

        assert (await reminders.poll_user(12345)).id == second.id
