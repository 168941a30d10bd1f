"""
Durable message store contract.

The messaging core only ever talks to a ``MessageStore``. Calls are blocking;
the router runs them in a worker thread so that one slow call only stalls the
connection that made it.
"""

from __future__ import annotations

import abc
import itertools
import threading
from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import datetime, timezone

from .models import Conversation, Message


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sort_conversations(conversations: Iterable[Conversation]) -> list[Conversation]:
    """Most recent first; entries without a timestamp go last."""
    conversations = list(conversations)
    dated = [c for c in conversations if c.last_message_time is not None]
    undated = [c for c in conversations if c.last_message_time is None]
    dated.sort(key=lambda c: c.last_message_time, reverse=True)
    return dated + undated


class MessageStore(abc.ABC):
    """Append-only log of direct messages with read marking.

    Every method raises ``StorageError`` when the backend fails.
    """

    @abc.abstractmethod
    def append(self, sender_id: int, recipient_id: int, body: str) -> Message:
        """Persist a new unread message and return it."""

    @abc.abstractmethod
    def history(self, user_a: int, user_b: int) -> Sequence[Message]:
        """Both directions of a conversation, oldest first."""

    @abc.abstractmethod
    def mark_read(self, recipient_id: int, sender_id: int) -> int:
        """Stamp every unread message from sender to recipient as read.

        Idempotent. Returns the number of messages that changed.
        """

    @abc.abstractmethod
    def unread_counts(self, recipient_id: int) -> dict[int, int]:
        """Unread messages addressed to ``recipient_id``, grouped by sender."""

    @abc.abstractmethod
    def conversations(self, user_id: int) -> list[Conversation]:
        """One entry per correspondent, most recent first."""

    def close(self) -> None:
        """Release backend resources."""


class InMemoryMessageStore(MessageStore):
    """Process-local store, used when no database URL is configured."""

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def append(self, sender_id: int, recipient_id: int, body: str) -> Message:
        with self._lock:
            message = Message(
                id=next(self._ids),
                sender_id=sender_id,
                recipient_id=recipient_id,
                body=body,
                created_at=utcnow(),
            )
            self._messages.append(message)
            return message

    def history(self, user_a: int, user_b: int) -> list[Message]:
        pair = {(user_a, user_b), (user_b, user_a)}
        with self._lock:
            found = [
                m for m in self._messages if (m.sender_id, m.recipient_id) in pair
            ]
        return sorted(found, key=lambda m: (m.created_at, m.id))

    def mark_read(self, recipient_id: int, sender_id: int) -> int:
        now = utcnow()
        changed = 0
        with self._lock:
            for index, m in enumerate(self._messages):
                if (
                    m.recipient_id == recipient_id
                    and m.sender_id == sender_id
                    and m.read_at is None
                ):
                    self._messages[index] = replace(m, read_at=now)
                    changed += 1
        return changed

    def unread_counts(self, recipient_id: int) -> dict[int, int]:
        counts: dict[int, int] = {}
        with self._lock:
            for m in self._messages:
                if m.recipient_id == recipient_id and m.read_at is None:
                    counts[m.sender_id] = counts.get(m.sender_id, 0) + 1
        return counts

    def conversations(self, user_id: int) -> list[Conversation]:
        latest: dict[int, Message] = {}
        unread: dict[int, int] = {}
        with self._lock:
            for m in self._messages:
                if user_id not in (m.sender_id, m.recipient_id):
                    continue
                other = m.recipient_id if m.sender_id == user_id else m.sender_id
                current = latest.get(other)
                if current is None or (m.created_at, m.id) > (
                    current.created_at,
                    current.id,
                ):
                    latest[other] = m
                if m.recipient_id == user_id and m.read_at is None:
                    unread[other] = unread.get(other, 0) + 1
        return sort_conversations(
            Conversation(
                other_user_id=other,
                last_message=m.body,
                last_message_time=m.created_at,
                unread_count=unread.get(other, 0),
            )
            for other, m in latest.items()
        )

