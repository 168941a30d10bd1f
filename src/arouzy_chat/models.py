"""
Data types for the messaging core.

User identities are plain ints. Timestamps are timezone-aware UTC datetimes.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Message:
    """A persisted direct message between two users."""

    id: int
    sender_id: int
    recipient_id: int
    body: str
    created_at: datetime
    read_at: datetime | None = None

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender_id,
            "to": self.recipient_id,
            "message": self.body,
            "timestamp": self.created_at.isoformat(),
            "readAt": self.read_at.isoformat() if self.read_at else None,
        }


@dataclass(frozen=True)
class Conversation:
    """Summary of one correspondent for a user's inbox."""

    other_user_id: int
    last_message: str | None
    last_message_time: datetime | None
    unread_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.other_user_id,
            "lastMessage": self.last_message,
            "lastMessageTime": (
                self.last_message_time.isoformat() if self.last_message_time else None
            ),
            "unreadCount": self.unread_count,
        }
