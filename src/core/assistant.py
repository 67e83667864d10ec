"""
Mirai Assistant — Chat turns.

One chat turn stores the user's message in the lane's session, asks the LLM for
a reply with the lane's context (goals for the goal lane, notes for the notes
lane) and the recent history, then stores the reply. Every turn produces a
user message and a bot message; if the LLM fails, the bot message carries a
fallback text instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

from src.config import settings
from src.core.goal_extractor import extract_goal
from src.core.llm import ChatHistory, complete
from src.core.session_keys import Lane, coerce_lane

if TYPE_CHECKING:
    from src.core.conversation import ConversationStore
    from src.data.models import Goal, Message, Note
    from src.ports.goal_port import GoalPort

logger = logging.getLogger(__name__)

_DATE_FORMAT = "%b %d, %Y"

_SYSTEM_PROMPTS = {
    Lane.GENERAL: (
        "You are {name}, a friendly personal-productivity assistant. "
        "Answer clearly and concisely. Use short paragraphs or bullet lists."
    ),
    Lane.GOAL: (
        "You are {name}, a goal coach. Help the user plan, prioritise and follow "
        "through on their goals. Refer to their goals when it helps.\n\n"
        "The user's goals:\n{context}"
    ),
    Lane.NOTES: (
        "You are {name}, a notes assistant. Answer questions about the user's "
        "notes, summarise them and connect related ideas. Say so when the notes "
        "do not contain the answer.\n\n"
        "The user's notes:\n{context}"
    ),
}

FALLBACK_REPLY = (
    "I am {name}, but I'm having trouble connecting to my brain right now. "
    "Please try again later."
)


@dataclass
class ChatTurn:
    """The two messages stored for one exchange."""

    user_message: Message
    bot_message: Message
    created_goal: Goal | None = None


def format_goals(goals: Iterable[Goal]) -> str:
    lines = []
    for goal in goals:
        status = "[COMPLETED]" if goal.completed else "[ACTIVE]"
        line = f"- {goal.title}"
        if goal.description and goal.description != goal.title:
            line += f": {goal.description}"
        line += f" {status}"
        if goal.created_at:
            line += f" - Created: {goal.created_at.strftime(_DATE_FORMAT)}"
        if goal.updated_at:
            line += f", Last Updated: {goal.updated_at.strftime(_DATE_FORMAT)}"
        if goal.due_date:
            line += f", Due: {goal.due_date.strftime(_DATE_FORMAT)}"
        lines.append(line)
    return "\n".join(lines) if lines else "No goals found."


def format_notes(notes: Iterable[Note]) -> str:
    blocks = [
        f"Title: {n.title}\nContent: {n.content}\n"
        f"Created: {n.created_at.strftime(_DATE_FORMAT)}\n---"
        for n in notes
    ]
    return "\n".join(blocks) if blocks else "No notes found."


def format_transcript(messages: Iterable[Message], assistant_name: str | None = None) -> str:
    """Render a conversation as plain text, e.g. to save it as a note."""
    name = assistant_name or settings.ASSISTANT_NAME
    lines = []
    for m in messages:
        speaker = name if m.is_bot else "You"
        lines.append(f"{speaker}: {m.content}")
    return "\n\n".join(lines)


def build_system_prompt(
    lane: Lane | str,
    goals: Iterable[Goal] | None = None,
    notes: Iterable[Note] | None = None,
) -> str:
    lane = coerce_lane(lane)
    context = ""
    if lane is Lane.GOAL:
        context = format_goals(goals or [])
    elif lane is Lane.NOTES:
        context = format_notes(notes or [])
    return _SYSTEM_PROMPTS[lane].format(name=settings.ASSISTANT_NAME, context=context)


def _to_history(messages: Iterable[Message]) -> ChatHistory:
    return [
        {"role": "assistant" if m.is_bot else "user", "content": m.content}
        for m in messages
    ]


async def chat_turn(
    store: ConversationStore,
    user_id: int,
    lane: Lane | str,
    content: str,
    goals: Iterable[Goal] | None = None,
    notes: Iterable[Note] | None = None,
    goal_port: GoalPort | None = None,
    now: datetime | None = None,
) -> ChatTurn:
    """Run one exchange in ``lane`` and return both stored messages.

    In the goal lane, a stated goal ("my goal is ...") is also created through
    ``goal_port`` when one is given.
    """
    lane = coerce_lane(lane)
    content = content.strip()
    if not content:
        raise ValueError("Message content is empty")

    key = store.key_for(user_id, lane)
    history = store.list_messages(user_id, key, limit=settings.CHAT_HISTORY_LIMIT)
    user_message = store.append_message(user_id, key, content, is_bot=False)

    system = build_system_prompt(lane, goals=goals, notes=notes)
    try:
        reply = (await complete(system, content, history=_to_history(history))).strip()
    except Exception as exc:
        logger.error("LLM reply failed for user %d (%s lane): %s", user_id, lane.value, exc)
        reply = ""
    if not reply:
        reply = FALLBACK_REPLY.format(name=settings.ASSISTANT_NAME)

    created_goal = None
    if lane is Lane.GOAL and goal_port is not None:
        extracted = extract_goal(content, now or datetime.now(timezone.utc))
        if extracted is not None:
            try:
                created_goal = goal_port.create_goal(
                    user_id,
                    title=extracted.title,
                    description=extracted.description,
                    due_date=extracted.due_date,
                )
            except Exception as exc:
                logger.error("Couldn't create goal from chat: %s", exc)

    bot_message = store.append_message(user_id, key, reply, is_bot=True)
    return ChatTurn(user_message=user_message, bot_message=bot_message, created_goal=created_goal)
