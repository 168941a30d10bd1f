"""
Wire format of the real-time channel.

Inbound frames are JSON objects ``{type, to?, from?, message?}``. Parsing is
strict about shape (unknown types and unparseable payloads are malformed and
get dropped by the router); semantic checks such as self-send live in the
router.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import Message

# User ids are stored in a 32-bit signed INTEGER column.
MAX_USER_ID = 2**31 - 1

EventType = Literal[
    "register",
    "ping",
    "message",
    "read",
    "typing_start",
    "typing_stop",
    "logout",
]


class InboundEvent(BaseModel):
    """One client -> server frame."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: EventType
    to: int | None = Field(default=None, gt=0, le=MAX_USER_ID)
    from_: int | None = Field(
        default=None, alias="from", gt=0, le=MAX_USER_ID
    )
    message: str | None = None


def parse_event(raw: str | bytes) -> InboundEvent:
    """Decode a frame. Raises ValidationError if it is not a known event."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Unparseable frame: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("Frame must be a JSON object")
    try:
        return InboundEvent.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed event: {exc.error_count()} error(s)") from exc


def _ts(value: datetime) -> str:
    return value.isoformat()


def unread_counts_event(counts: dict[int, int]) -> dict[str, Any]:
    return {
        "type": "unread_counts",
        "counts": {str(sender): count for sender, count in counts.items()},
    }


def message_event(message: Message, event_type: str = "message") -> dict[str, Any]:
    return {
        "type": event_type,
        "id": message.id,
        "from": message.sender_id,
        "to": message.recipient_id,
        "message": message.body,
        "timestamp": _ts(message.created_at),
    }


def presence_event(user_ids: set[int]) -> dict[str, Any]:
    return {"type": "presence", "userIds": sorted(user_ids)}


def read_receipt_event(reader_id: int, read_at: datetime) -> dict[str, Any]:
    return {"type": "message_read", "by": reader_id, "timestamp": _ts(read_at)}


def typing_event(event_type: str, sender_id: int) -> dict[str, Any]:
    return {"type": event_type, "from": sender_id}


def pong_event() -> dict[str, Any]:
    return {"type": "pong"}


def error_event(code: str, message: str, event: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "error", "code": code, "message": message}
    if event is not None:
        payload["event"] = event
    return payload
