"""
Mirai Assistant — Telegram Bot.

Telegram is the only user interface. Every interaction (chatting in the
general / goal / notes lanes, goal and note management, reminder buttons)
flows through this bot.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    ConversationHandler,
    MessageHandler,
    filters,
)
from telegram.helpers import escape_markdown

from src.config import settings
from src.core.notifications import NoActiveReminderError, ReminderActionError
from src.core.session_keys import Lane, coerce_lane
from src.core.timeline import Pending, Timeline
from src.data.models import PRIORITIES

if TYPE_CHECKING:
    from src.core.conversation import ConversationStore
    from src.core.reminder_service import ReminderService
    from src.data.db import GoalDB, NoteDB, UserDB
    from src.data.models import Goal
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, Any]],
) -> Callable[..., Coroutine[Any, Any, Any]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> Any:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return None  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tz() -> ZoneInfo:
    return ZoneInfo(settings.TIMEZONE)


def _active_lane(context: ContextTypes.DEFAULT_TYPE) -> Lane:
    return context.user_data.get("lane", Lane.GENERAL)


def _timeline(
    context: ContextTypes.DEFAULT_TYPE, store: ConversationStore, user_id: int, lane: Lane,
) -> Timeline:
    """The lane's chat timeline, seeded from storage on first use."""
    timelines = context.user_data.setdefault("timelines", {})
    timeline = timelines.get(lane.value)
    if timeline is None:
        limit = settings.CHAT_HISTORY_LIMIT
        messages = store.list_messages(user_id, store.key_for(user_id, lane), limit=limit)
        timeline = timelines[lane.value] = Timeline(messages, limit=limit)
    return timeline


_RELATIVE_RE = re.compile(r"^\+(\d+)\s*(m|min|h)?$")


def parse_local_datetime(text: str, now: datetime | None = None) -> datetime | None:
    """Parse user input in the configured timezone and return it in UTC.

    Accepts "YYYY-MM-DD HH:MM", "YYYY-MM-DD" (09:00), "HH:MM" (today) and
    relative offsets such as "+30" / "+30m" / "+2h". Returns None when the
    text matches none of them.
    """
    text = text.strip()
    tz = _tz()
    now = now or datetime.now(timezone.utc)

    match = _RELATIVE_RE.match(text)
    if match:
        amount = int(match.group(1))
        unit = match.group(2) or "m"
        delta = timedelta(hours=amount) if unit == "h" else timedelta(minutes=amount)
        return now + delta

    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%d"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = parsed.replace(hour=9)
        return parsed.replace(tzinfo=tz).astimezone(timezone.utc)

    try:
        clock = datetime.strptime(text, "%H:%M").time()
    except ValueError:
        return None
    local_today = now.astimezone(tz).date()
    return datetime.combine(local_today, clock, tzinfo=tz).astimezone(timezone.utc)


def parse_category_tags(text: str) -> tuple[str | None, list[str]]:
    """Split "work stuff #urgent #q3" into ("work stuff", ["urgent", "q3"])."""
    words = text.split()
    tags = [w.lstrip("#") for w in words if w.startswith("#") and w.strip("#")]
    category = " ".join(w for w in words if not w.startswith("#"))
    return category or None, tags


_RECURRENCE_UNITS = {"daily": "day", "custom": "day", "weekly": "week", "monthly": "month"}


def _describe_recurrence(recurring_type: str, interval: int) -> str:
    unit = _RECURRENCE_UNITS.get(recurring_type, "day")
    if interval == 1:
        return f"every {unit}"
    return f"every {interval} {unit}s"


def _format_goal_line(goal: Goal, now: datetime) -> str:
    from src.core.goal_filters import is_due_soon, is_overdue

    if goal.completed:
        marker = "✅"
    elif is_overdue(goal, now):
        marker = "⚠️"
    elif is_due_soon(goal, now):
        marker = "⏳"
    else:
        marker = "•"
    line = f"{marker} `{goal.id}` {escape_markdown(goal.title)} ({goal.priority})"
    if goal.due_date is not None:
        line += f" — due {goal.due_date.astimezone(_tz()):%Y-%m-%d}"
    if goal.reminder_time is not None and not goal.completed:
        line += f" 🔔 {goal.reminder_time.astimezone(_tz()):%m-%d %H:%M}"
    return line


def _parse_id_arg(context: ContextTypes.DEFAULT_TYPE) -> int | None:
    if not context.args:
        return None
    try:
        return int(context.args[0])
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — register the user, adopt legacy history, say welcome."""
    user_db: UserDB = context.bot_data["user_db"]
    store: ConversationStore = context.bot_data["conversation"]
    tg_user = update.effective_user

    user = user_db.get_user(tg_user.id)
    if user is None:
        username = tg_user.username or tg_user.first_name or str(tg_user.id)
        user = user_db.add_user(tg_user.id, username)
    user_db.stamp_initial_login(tg_user.id)

    # Older sessions were keyed by username or email
    handles = dict.fromkeys(h for h in (tg_user.username, user.username, user.email) if h)
    moved = 0
    try:
        for handle in handles:
            for lane in Lane:
                moved += store.adopt_legacy_history(tg_user.id, handle, lane)
    except Exception as exc:
        logger.error("Legacy history adoption failed for user %d: %s", tg_user.id, exc)
    if moved:
        context.user_data.pop("timelines", None)

    welcome = (
        f"Welcome to *{settings.ASSISTANT_NAME}*!\n\n"
        "• Just send me a message to chat\n"
        "• /lane goal — talk to your goal coach, /lane notes — ask about your notes\n"
        "• /addgoal — add a goal with a reminder, /goals — list goals\n"
        "• /note Title | text — save a note, /notes — list notes\n\n"
        "Type /help for the full command list."
    )
    if moved:
        welcome += f"\n\nRestored {moved} earlier messages."
    await update.message.reply_text(welcome, parse_mode="Markdown")
    if user.onboarding_completed_at is None:
        user_db.complete_onboarding(tg_user.id)


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/lane [general|goal|notes] — Show or switch the chat lane\n"
        "/history — Recent messages in the current lane\n"
        "/clear — Delete the current lane's history\n"
        "/savechat — Save the current lane's chat as a note\n"
        "/addgoal — Add a goal (with optional due date and reminder)\n"
        "/goals [low|medium|high|<category>] — List active goals\n"
        "/done <id> — Mark a goal as complete\n"
        "/deletegoal <id> — Delete a goal\n"
        "/search <text> — Search goals\n"
        "/note <title> | <content> — Save a note\n"
        "/notes — List notes\n"
        "/editnote <id> [title |] <content> — Edit a note\n"
        "/deletenote <id> — Delete a note\n"
        "/logout — Reset your session state\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_lane(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /lane [name] — show or switch the active chat lane."""
    if not context.args:
        lane = _active_lane(context)
        await update.message.reply_text(
            f"Current lane: *{lane.value}*. Switch with /lane general, /lane goal or /lane notes.",
            parse_mode="Markdown",
        )
        return

    try:
        lane = coerce_lane(context.args[0])
    except ValueError:
        await update.message.reply_text("Unknown lane. Use: general, goal or notes.")
        return

    context.user_data["lane"] = lane
    await update.message.reply_text(f"Switched to the *{lane.value}* lane.", parse_mode="Markdown")


@authorized_only
async def cmd_history(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /history — show the active lane's timeline, in-flight messages included."""
    store: ConversationStore = context.bot_data["conversation"]
    user_id = update.effective_user.id
    lane = _active_lane(context)

    entries = _timeline(context, store, user_id, lane).entries
    if not entries:
        await update.message.reply_text(f"No messages in the {lane.value} lane yet.")
        return

    tz = _tz()
    lines = [f"{lane.value} lane — last {len(entries)} messages:\n"]
    for entry in entries:
        if isinstance(entry, Pending):
            speaker = settings.ASSISTANT_NAME if entry.is_bot else "You"
            lines.append(f"[sending…] {speaker}: {entry.content}")
            continue
        m = entry.message
        speaker = settings.ASSISTANT_NAME if m.is_bot else "You"
        lines.append(f"[{m.timestamp.astimezone(tz):%m-%d %H:%M}] {speaker}: {m.content}")
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_clear(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /clear — delete the active lane's messages."""
    store: ConversationStore = context.bot_data["conversation"]
    user_id = update.effective_user.id
    lane = _active_lane(context)

    try:
        deleted = store.clear_session(user_id, store.key_for(user_id, lane))
    except Exception as exc:
        logger.error("/clear error: %s", exc)
        await update.message.reply_text("Couldn't clear the history. Please try again.")
        return

    context.user_data.get("timelines", {}).pop(lane.value, None)
    await update.message.reply_text(f"🧹 Cleared {deleted} messages from the {lane.value} lane.")


@authorized_only
async def cmd_savechat(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /savechat — store the active lane's conversation as a note."""
    from src.core.assistant import format_transcript

    store: ConversationStore = context.bot_data["conversation"]
    note_db: NoteDB = context.bot_data["note_db"]
    user_id = update.effective_user.id
    lane = _active_lane(context)

    messages = store.list_messages(user_id, store.key_for(user_id, lane))
    if not messages:
        await update.message.reply_text("Nothing to save yet.")
        return

    title = " ".join(context.args) if context.args else (
        f"Chat ({lane.value}) {datetime.now(_tz()):%Y-%m-%d %H:%M}"
    )
    note = note_db.create_note(user_id, title, format_transcript(messages))
    await update.message.reply_text(
        f"📝 Saved as note `{note.id}` — {escape_markdown(note.title)}", parse_mode="Markdown",
    )


@authorized_only
async def cmd_logout(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /logout — drop reminder state and per-chat data."""
    reminders: ReminderService = context.bot_data["reminders"]
    reminders.forget(update.effective_user.id)
    context.user_data.clear()
    await update.message.reply_text("Logged out. Send /start to begin again.")


# ---------------------------------------------------------------------------
# Goal commands
# ---------------------------------------------------------------------------

# ConversationHandler states for /addgoal
(
    GOAL_TITLE,
    GOAL_DUE,
    GOAL_REMINDER,
    GOAL_PRIORITY,
    GOAL_RECURRENCE,
    GOAL_CATEGORY,
) = range(6)

_SKIP_WORDS = {"skip", "none", "no", "-"}


@authorized_only
async def cmd_addgoal(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
    await update.message.reply_text("What's the goal? (send /cancel to stop)")
    return GOAL_TITLE


async def addgoal_title(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
    title = update.message.text.strip()
    if not title:
        await update.message.reply_text("Please send a title for the goal.")
        return GOAL_TITLE
    context.user_data["goal_title"] = title
    await update.message.reply_text(
        "When is it due? (YYYY-MM-DD, or 'skip')"
    )
    return GOAL_DUE


async def addgoal_due(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
    text = update.message.text.strip()
    if text.lower() in _SKIP_WORDS:
        context.user_data["goal_due"] = None
    else:
        due = parse_local_datetime(text)
        if due is None:
            await update.message.reply_text("I couldn't read that date. Try YYYY-MM-DD or 'skip'.")
            return GOAL_DUE
        context.user_data["goal_due"] = due
    await update.message.reply_text(
        "When should I remind you? (YYYY-MM-DD HH:MM, HH:MM, +30m, or 'skip')"
    )
    return GOAL_REMINDER


async def addgoal_reminder(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
    text = update.message.text.strip()
    if text.lower() in _SKIP_WORDS:
        context.user_data["goal_reminder"] = None
    else:
        reminder = parse_local_datetime(text)
        if reminder is None:
            await update.message.reply_text(
                "I couldn't read that time. Try YYYY-MM-DD HH:MM, HH:MM, +30m or 'skip'."
            )
            return GOAL_REMINDER
        context.user_data["goal_reminder"] = reminder
    await update.message.reply_text("Priority? (low / medium / high)")
    return GOAL_PRIORITY


_CATEGORY_PROMPT = "Category and tags? e.g. 'work #urgent #q3' (or 'skip')"


async def addgoal_priority(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
    priority = update.message.text.strip().lower()
    if priority not in PRIORITIES:
        await update.message.reply_text("Please answer low, medium or high.")
        return GOAL_PRIORITY
    context.user_data["goal_priority"] = priority

    # Only goals with a due date can repeat
    if context.user_data.get("goal_due") is None:
        await update.message.reply_text(_CATEGORY_PROMPT)
        return GOAL_CATEGORY
    await update.message.reply_text(
        "Does it repeat? (daily, weekly, monthly, every 3 days, or 'no')"
    )
    return GOAL_RECURRENCE


async def addgoal_recurrence(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
    from src.core.recurrence import parse_recurrence

    text = update.message.text.strip()
    if text.lower() in _SKIP_WORDS:
        context.user_data["goal_recurrence"] = None
    else:
        recurrence = parse_recurrence(text)
        if recurrence is None:
            await update.message.reply_text(
                "I couldn't read that. Try daily, weekly, monthly, every 3 days or 'no'."
            )
            return GOAL_RECURRENCE
        context.user_data["goal_recurrence"] = recurrence
    await update.message.reply_text(_CATEGORY_PROMPT)
    return GOAL_CATEGORY


async def addgoal_category(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
    goal_db: GoalDB = context.bot_data["goal_db"]
    text = update.message.text.strip()
    category, tags = (None, []) if text.lower() in _SKIP_WORDS else parse_category_tags(text)
    recurring_type, interval = context.user_data.get("goal_recurrence") or (None, None)

    try:
        goal = goal_db.create_goal(
            update.effective_user.id,
            title=context.user_data["goal_title"],
            due_date=context.user_data.get("goal_due"),
            reminder_time=context.user_data.get("goal_reminder"),
            priority=context.user_data["goal_priority"],
            category=category,
            tags=tags,
            is_recurring=recurring_type is not None,
            recurring_type=recurring_type,
            recurring_interval=interval,
        )
    except Exception as exc:
        logger.error("/addgoal error: %s", exc)
        await update.message.reply_text("Couldn't save the goal. Please try again.")
        _clear_goal_data(context)
        return ConversationHandler.END

    msg = f"🎯 Goal `{goal.id}` added: {escape_markdown(goal.title)}"
    if goal.reminder_time is not None:
        msg += f"\n🔔 Reminder at {goal.reminder_time.astimezone(_tz()):%Y-%m-%d %H:%M}"
    if goal.is_recurring:
        msg += f"\n🔁 Repeats {_describe_recurrence(goal.recurring_type, goal.recurring_interval)}"
    if goal.category or goal.tags:
        labels = [goal.category or ""] + [f"#{t}" for t in goal.tags]
        msg += f"\n🏷 {escape_markdown(' '.join(labels).strip())}"
    await update.message.reply_text(msg, parse_mode="Markdown")
    _clear_goal_data(context)
    return ConversationHandler.END


async def addgoal_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> int:
    _clear_goal_data(context)
    await update.message.reply_text("Cancelled.")
    return ConversationHandler.END


def _clear_goal_data(context: ContextTypes.DEFAULT_TYPE) -> None:
    for key in ("goal_title", "goal_due", "goal_reminder", "goal_priority", "goal_recurrence"):
        context.user_data.pop(key, None)


@authorized_only
async def cmd_goals(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /goals [priority|category] — list active goals with overdue / due-soon markers."""
    from src.core.goal_filters import active_goals, by_category, by_priority, summarize

    goal_db: GoalDB = context.bot_data["goal_db"]
    try:
        goals = goal_db.get_goals_by_user(update.effective_user.id)
    except Exception as exc:
        logger.error("/goals error: %s", exc)
        await update.message.reply_text("Couldn't load goals. Please try again.")
        return

    active = active_goals(goals)
    wanted = " ".join(context.args or []).strip().lower()
    header = "*Active goals:*"
    if wanted in PRIORITIES:
        active = by_priority(active, wanted)
        header = f"*Active {wanted}-priority goals:*"
    elif wanted:
        active = by_category(active, wanted)
        header = f"*Active goals in* {escape_markdown(wanted)}:"

    if not active:
        if wanted:
            await update.message.reply_text(f"No active goals match '{wanted}'.")
        else:
            await update.message.reply_text("No active goals. Add one with /addgoal.")
        return

    now = datetime.now(timezone.utc)
    stats = summarize(goals, now)
    lines = [header + "\n"]
    lines += [_format_goal_line(g, now) for g in active]
    lines.append(
        f"\n{stats.active} active · {stats.overdue} overdue · "
        f"{stats.due_soon} due soon · {stats.completed} completed"
    )
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /done <id> — mark a goal as complete."""
    from src.core.recurrence import complete_goal

    goal_db: GoalDB = context.bot_data["goal_db"]
    goal_id = _parse_id_arg(context)
    if goal_id is None:
        await update.message.reply_text("Usage: /done <goal_id>\nUse /goals to see IDs.")
        return

    try:
        goal, follow_up = complete_goal(goal_db, goal_id, update.effective_user.id)
    except Exception as exc:
        logger.error("/done error: %s", exc)
        await update.message.reply_text(f"Couldn't complete goal {goal_id}. Please check the ID.")
        return

    msg = f"✅ Marked '{escape_markdown(goal.title)}' as complete."
    if follow_up is not None and follow_up.due_date is not None:
        msg += f"\nNext occurrence due {follow_up.due_date.astimezone(_tz()):%Y-%m-%d}."
    await update.message.reply_text(msg, parse_mode="Markdown")


@authorized_only
async def cmd_deletegoal(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /deletegoal <id>."""
    goal_db: GoalDB = context.bot_data["goal_db"]
    goal_id = _parse_id_arg(context)
    if goal_id is None:
        await update.message.reply_text("Usage: /deletegoal <goal_id>")
        return

    if goal_db.delete_goal(goal_id, update.effective_user.id):
        await update.message.reply_text(f"🗑 Goal {goal_id} deleted.")
    else:
        await update.message.reply_text(f"Goal {goal_id} not found.")


@authorized_only
async def cmd_search(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /search <term> — search goals by title, description, category, tags."""
    from src.core.goal_filters import search_goals

    goal_db: GoalDB = context.bot_data["goal_db"]
    term = " ".join(context.args or []).strip()
    if not term:
        await update.message.reply_text("Usage: /search <text>")
        return

    results = search_goals(goal_db.get_goals_by_user(update.effective_user.id), term)
    if not results:
        await update.message.reply_text(f"No goals match '{term}'.")
        return

    now = datetime.now(timezone.utc)
    lines = [f"*Goals matching* '{escape_markdown(term)}':\n"]
    lines += [_format_goal_line(g, now) for g in results]
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


# ---------------------------------------------------------------------------
# Note commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_note(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /note <title> | <content>."""
    note_db: NoteDB = context.bot_data["note_db"]
    raw = " ".join(context.args or [])
    title, sep, content = raw.partition("|")
    if not sep or not title.strip():
        await update.message.reply_text("Usage: /note <title> | <content>")
        return

    note = note_db.create_note(update.effective_user.id, title.strip(), content.strip())
    await update.message.reply_text(f"📝 Note `{note.id}` saved.", parse_mode="Markdown")


@authorized_only
async def cmd_notes(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /notes — list notes, most recently updated first."""
    note_db: NoteDB = context.bot_data["note_db"]
    notes = note_db.list_notes(update.effective_user.id)
    if not notes:
        await update.message.reply_text("No notes yet. Add one with /note <title> | <content>.")
        return

    lines = ["*Notes:*\n"]
    for n in notes:
        preview = n.content if len(n.content) <= 60 else n.content[:57] + "..."
        lines.append(f"`{n.id}` {escape_markdown(n.title)} — {escape_markdown(preview)}")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_editnote(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /editnote <id> [title |] <content>."""
    note_db: NoteDB = context.bot_data["note_db"]
    usage = "Usage: /editnote <note_id> [new title |] <new content>"
    note_id = _parse_id_arg(context)
    rest = " ".join((context.args or [])[1:])
    if note_id is None or not rest.strip():
        await update.message.reply_text(usage)
        return

    title, sep, content = rest.partition("|")
    if not sep:
        title, content = "", rest
    new_title = title.strip() or None
    new_content = content.strip() or None
    if new_title is None and new_content is None:
        await update.message.reply_text(usage)
        return

    note = note_db.update_note(
        note_id, update.effective_user.id, title=new_title, content=new_content,
    )
    if note is None:
        await update.message.reply_text(f"Note {note_id} not found.")
        return
    await update.message.reply_text(f"📝 Note `{note.id}` updated.", parse_mode="Markdown")


@authorized_only
async def cmd_deletenote(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    note_db: NoteDB = context.bot_data["note_db"]
    note_id = _parse_id_arg(context)
    if note_id is None:
        await update.message.reply_text("Usage: /deletenote <note_id>")
        return

    if note_db.delete_note(note_id, update.effective_user.id):
        await update.message.reply_text(f"🗑 Note {note_id} deleted.")
    else:
        await update.message.reply_text(f"Note {note_id} not found.")


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plain text — one chat turn in the active lane."""
    from src.core.assistant import chat_turn

    store: ConversationStore = context.bot_data["conversation"]
    goal_db: GoalDB = context.bot_data["goal_db"]
    note_db: NoteDB = context.bot_data["note_db"]
    user_id = update.effective_user.id
    lane = _active_lane(context)
    text = update.message.text

    timeline = _timeline(context, store, user_id, lane)
    pending = timeline.add_pending(text.strip(), datetime.now(timezone.utc))

    try:
        await context.bot.send_chat_action(chat_id=update.effective_chat.id, action=ChatAction.TYPING)
    except Exception:
        pass  # Non-critical if the typing indicator fails

    try:
        goals = goal_db.get_goals_by_user(user_id) if lane is Lane.GOAL else None
        notes = note_db.list_notes(user_id) if lane is Lane.NOTES else None
        turn = await chat_turn(
            store, user_id, lane, text,
            goals=goals, notes=notes, goal_port=goal_db,
        )
    except Exception as exc:
        logger.error("Chat turn failed for user %d: %s", user_id, exc)
        timeline.discard(pending.client_id)
        await update.message.reply_text("Sorry, something went wrong. Please try again.")
        return

    timeline.confirm(turn.user_message)
    timeline.confirm(turn.bot_message)
    await update.message.reply_text(turn.bot_message.content)
    if turn.created_goal is not None:
        await update.message.reply_text(
            f"🎯 Added goal `{turn.created_goal.id}`: {escape_markdown(turn.created_goal.title)}",
            parse_mode="Markdown",
        )


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


async def _handle_reminder_callback(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Handle a reminder button: complete, snooze or dismiss."""
    reminders: ReminderService = context.bot_data["reminders"]

    query = update.callback_query
    await query.answer()

    user = query.from_user
    if user is None or user.id not in settings.ALLOWED_USER_IDS:
        return

    try:
        _, action, raw_id = query.data.split(":")
        goal_id = int(raw_id)
    except ValueError:
        logger.warning("Malformed reminder callback data: %r", query.data)
        return

    try:
        text = await asyncio.to_thread(reminders.act, user.id, action, goal_id)
    except NoActiveReminderError:
        await query.edit_message_text("This reminder is no longer active.")
        return
    except ReminderActionError:
        # Keep the buttons so the user can retry or dismiss
        await query.message.reply_text("Couldn't update the reminder. Please try again.")
        return
    except ValueError:
        logger.warning("Unknown reminder action %r from user %d", action, user.id)
        return

    await query.edit_message_text(text)
    context.job_queue.run_once(
        _reminder_recheck_job,
        when=settings.REMINDER_RECHECK_SECONDS,
        data=user.id,
        name=f"reminder_recheck_{user.id}",
    )


def _reminder_user_ids(user_db: UserDB) -> list[int]:
    allowed = set(settings.ALLOWED_USER_IDS)
    return [u.user_id for u in user_db.list_users() if u.user_id in allowed]


async def _reminder_poll_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    reminders: ReminderService = context.bot_data["reminders"]
    user_db: UserDB = context.bot_data["user_db"]
    await reminders.poll_all(_reminder_user_ids(user_db))


async def _reminder_recheck_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    reminders: ReminderService = context.bot_data["reminders"]
    try:
        await reminders.poll_user(context.job.data)
    except Exception as exc:
        logger.error("Reminder re-check failed for user %s: %s", context.job.data, exc)


async def _reminder_sweep_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    reminders: ReminderService = context.bot_data["reminders"]
    evicted = reminders.sweep_all()
    logger.debug("Reminder sweep evicted %d entries", evicted)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    notifier: NotificationPort | None = None,
    db_path: str | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
        db_path: SQLite path. Defaults to DATABASE_PATH.
    """
    from src.core.conversation import ConversationStore
    from src.core.reminder_service import ReminderService
    from src.data.db import ConversationDB, GoalDB, NoteDB, UserDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if notifier is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    goal_db = GoalDB(db_path)

    # Store collaborators in bot_data for handler access
    app.bot_data["user_db"] = UserDB(db_path)
    app.bot_data["conversation"] = ConversationStore(ConversationDB(db_path))
    app.bot_data["goal_db"] = goal_db
    app.bot_data["note_db"] = NoteDB(db_path)
    app.bot_data["notifier"] = notifier
    app.bot_data["reminders"] = ReminderService(
        goal_db, notifier, window=timedelta(minutes=settings.REMINDER_WINDOW_MINUTES),
    )

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("lane", cmd_lane))
    app.add_handler(CommandHandler("history", cmd_history))
    app.add_handler(CommandHandler("clear", cmd_clear))
    app.add_handler(CommandHandler("savechat", cmd_savechat))
    app.add_handler(CommandHandler("logout", cmd_logout))
    app.add_handler(CommandHandler("goals", cmd_goals))
    app.add_handler(CommandHandler("done", cmd_done))
    app.add_handler(CommandHandler("deletegoal", cmd_deletegoal))
    app.add_handler(CommandHandler("search", cmd_search))
    app.add_handler(CommandHandler("note", cmd_note))
    app.add_handler(CommandHandler("notes", cmd_notes))
    app.add_handler(CommandHandler("editnote", cmd_editnote))
    app.add_handler(CommandHandler("deletenote", cmd_deletenote))
    app.add_handler(CallbackQueryHandler(_handle_reminder_callback, pattern=r"^reminder:"))

    # /addgoal conversation handler
    _text = filters.TEXT & ~filters.COMMAND
    addgoal_conv = ConversationHandler(
        entry_points=[CommandHandler("addgoal", cmd_addgoal)],
        states={
            GOAL_TITLE: [MessageHandler(_text, addgoal_title)],
            GOAL_DUE: [MessageHandler(_text, addgoal_due)],
            GOAL_REMINDER: [MessageHandler(_text, addgoal_reminder)],
            GOAL_PRIORITY: [MessageHandler(_text, addgoal_priority)],
            GOAL_RECURRENCE: [MessageHandler(_text, addgoal_recurrence)],
            GOAL_CATEGORY: [MessageHandler(_text, addgoal_category)],
        },
        fallbacks=[CommandHandler("cancel", addgoal_cancel)],
    )
    app.add_handler(addgoal_conv)

    # Text messages (non-command)
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    # Reminder polling and cache sweep
    _setup_reminder_jobs(app)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_reminder_jobs(app: Application) -> None:
    """Register the reminder poll and the hourly dedup-cache sweep."""
    app.job_queue.run_repeating(
        _reminder_poll_job,
        interval=settings.REMINDER_POLL_SECONDS,
        first=5,
        name="reminder_poll",
    )
    app.job_queue.run_repeating(
        _reminder_sweep_job,
        interval=settings.REMINDER_SWEEP_SECONDS,
        first=settings.REMINDER_SWEEP_SECONDS,
        name="reminder_sweep",
    )
    logger.info(
        "Reminder polling every %ds, cache sweep every %ds",
        settings.REMINDER_POLL_SECONDS,
        settings.REMINDER_SWEEP_SECONDS,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting %s bot...", settings.ASSISTANT_NAME)
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
