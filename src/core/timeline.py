"""Chat timeline — in-flight messages shown before storage confirms them.

Entries are a tagged union: ``Pending`` for a message the client has sent but
storage has not echoed yet, and ``Confirmed`` for a stored Message. When the
stored message arrives, it replaces the pending entry with the same content;
if several match, the one whose send time is closest to the stored timestamp
wins (earliest entry on a tie).
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Union

if TYPE_CHECKING:
    from src.data.models import Message

_client_ids = itertools.count(1)


@dataclass(frozen=True)
class Pending:
    client_id: str
    content: str
    sent_at: datetime
    is_bot: bool = False


@dataclass(frozen=True)
class Confirmed:
    message: Message

    @property
    def content(self) -> str:
        return self.message.content


Entry = Union[Pending, Confirmed]


class Timeline:
    """Ordered list of pending and confirmed chat entries.

    With a ``limit``, the oldest confirmed entries are dropped once the
    timeline grows past it. Pending entries are never dropped.
    """

    def __init__(self, messages: Iterable[Message] = (), limit: int | None = None) -> None:
        self.limit = limit
        self._entries: list[Entry] = [Confirmed(m) for m in messages]
        self._trim()

    @property
    def entries(self) -> list[Entry]:
        return list(self._entries)

    @property
    def pending(self) -> list[Pending]:
        return [e for e in self._entries if isinstance(e, Pending)]

    def add_pending(self, content: str, sent_at: datetime, is_bot: bool = False) -> Pending:
        entry = Pending(
            client_id=f"pending-{next(_client_ids)}",
            content=content,
            sent_at=sent_at,
            is_bot=is_bot,
        )
        self._entries.append(entry)
        self._trim()
        return entry

    def confirm(self, message: Message) -> Confirmed:
        """Replace the matching pending entry with ``message``.

        Appends the message if nothing pending matches it.
        """
        confirmed = Confirmed(message)
        best_index: int | None = None
        best_gap: float | None = None
        for index, entry in enumerate(self._entries):
            if not isinstance(entry, Pending):
                continue
            if entry.content != message.content or entry.is_bot != message.is_bot:
                continue
            gap = abs((message.timestamp - entry.sent_at).total_seconds())
            if best_gap is None or gap < best_gap:
                best_index, best_gap = index, gap

        if best_index is None:
            self._entries.append(confirmed)
            self._trim()
        else:
            self._entries[best_index] = confirmed
        return confirmed

    def _trim(self) -> None:
        if self.limit is None:
            return
        excess = len(self._entries) - self.limit
        if excess <= 0:
            return
        kept: list[Entry] = []
        for entry in self._entries:
            if excess > 0 and isinstance(entry, Confirmed):
                excess -= 1
                continue
            kept.append(entry)
        self._entries = kept

    def discard(self, client_id: str) -> bool:
        """Drop a pending entry whose send failed."""
        for index, entry in enumerate(self._entries):
            if isinstance(entry, Pending) and entry.client_id == client_id:
                del self._entries[index]
                return True
        return False
