"""
Per-connection message routing.

A ``Session`` walks Connecting -> Authenticated -> Active -> Closed. While
Active, ``MessageRouter.run`` reads one frame at a time and handles it to
completion before reading the next, so a single user's actions keep their
order. Store calls run in a worker thread; the only suspension points are
the transport read, store calls and pushes, never while holding a registry
or unread-counter lock.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from fastapi.concurrency import run_in_threadpool
from loguru import logger

from . import protocol
from .errors import StorageError, TransportError, ValidationError
from .models import Message
from .registry import ConnectionRegistry
from .store import MessageStore
from .unread import UnreadCounter

if TYPE_CHECKING:
    from .connection import Connection
    from .presence import PresenceBroadcaster

DEFAULT_MAX_MESSAGE_LENGTH = 4000


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.CONNECTING: {SessionState.AUTHENTICATED, SessionState.CLOSED},
    SessionState.AUTHENTICATED: {SessionState.ACTIVE, SessionState.CLOSED},
    SessionState.ACTIVE: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class Session:
    """State of one client connection over its lifetime."""

    def __init__(self) -> None:
        self.state = SessionState.CONNECTING
        self.user_id: int | None = None
        self.conn: Connection | None = None
        self.logout_requested = False
        self.events_handled = 0

    def transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid session transition {self.state.value} -> {target.value}"
            )
        logger.debug(
            f"Session user={self.user_id}: {self.state.value} -> {target.value}"
        )
        self.state = target

    def authenticate(self, user_id: int, conn: Connection) -> None:
        self.user_id = user_id
        self.conn = conn
        self.transition(SessionState.AUTHENTICATED)

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE and not self.logout_requested


class MessageRouter:
    """Validates, persists and delivers the events of one connection."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        unread: UnreadCounter,
        store: MessageStore,
        broadcaster: PresenceBroadcaster,
        max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
    ) -> None:
        self.registry = registry
        self.unread = unread
        self.store = store
        self.broadcaster = broadcaster
        self.max_message_length = max_message_length

    async def run(self, session: Session) -> None:
        """Active loop: returns when the transport fails or the user logs out."""
        while session.active:
            try:
                raw = await session.conn.receive_text()
            except TransportError as exc:
                logger.info(f"User {session.user_id} read loop ended: {exc}")
                return
            await self.handle_frame(session, raw)

    async def handle_frame(self, session: Session, raw: str) -> None:
        try:
            event = protocol.parse_event(raw)
        except ValidationError as exc:
            # A bad frame never terminates the connection.
            logger.debug(f"Dropped frame from user {session.user_id}: {exc}")
            return
        await self.handle_event(session, event)

    async def handle_event(
        self, session: Session, event: protocol.InboundEvent
    ) -> None:
        session.events_handled += 1
        try:
            if event.type == "message":
                await self.send_message(session, event.to, event.message)
            elif event.type == "read":
                await self.mark_read(session, event.from_)
            elif event.type in ("typing_start", "typing_stop"):
                await self.relay_typing(session, event.type, event.to)
            elif event.type == "register":
                await self.confirm_registration(session)
            elif event.type == "ping":
                await self._reply(session, protocol.pong_event())
            elif event.type == "logout":
                logger.info(f"User {session.user_id} logged out")
                session.logout_requested = True
        except ValidationError as exc:
            logger.info(f"Rejected {event.type} from user {session.user_id}: {exc}")
            await self._reply(
                session, protocol.error_event(exc.code, str(exc), event.type)
            )

    def _validate_send(
        self, sender_id: int, recipient_id: int | None, body: str | None
    ) -> str:
        if recipient_id is None or recipient_id <= 0:
            raise ValidationError("Recipient is required")
        if recipient_id == sender_id:
            raise ValidationError("Cannot send a message to yourself")
        if body is None or not body.strip():
            raise ValidationError("Message body must not be empty")
        if len(body) > self.max_message_length:
            raise ValidationError(
                f"Message exceeds {self.max_message_length} characters"
            )
        try:
            body.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise ValidationError("Message body is not valid UTF-8 text") from exc
        return body

    async def send_message(
        self, session: Session, recipient_id: int | None, body: str | None
    ) -> Message | None:
        """Persist then deliver or queue. Returns None if persisting failed."""
        sender_id = session.user_id
        body = self._validate_send(sender_id, recipient_id, body)

        try:
            message = await run_in_threadpool(
                self.store.append, sender_id, recipient_id, body
            )
        except StorageError as exc:
            logger.error(
                f"Failed to save message from user {sender_id} to {recipient_id}: {exc}"
            )
            await self._reply(
                session,
                protocol.error_event(
                    StorageError.code, "Message could not be saved", "message"
                ),
            )
            return None

        recipient = self.registry.lookup(recipient_id)
        delivered = False
        if recipient is not None:
            delivered = await self.deliver(recipient, protocol.message_event(message))
        if delivered:
            logger.debug(f"Message {message.id} delivered to online user {recipient_id}")
        else:
            count = self.unread.increment(recipient_id, sender_id)
            logger.debug(
                f"User {recipient_id} not reachable, unread from {sender_id} now {count}"
            )
            await self.push_unread(recipient_id)

        await self._reply(session, protocol.message_event(message, "message_sent"))
        return message

    async def mark_read(self, session: Session, sender_id: int | None) -> bool:
        """Persist first, then clear the cache. Returns False on storage failure."""
        if sender_id is None or sender_id <= 0:
            raise ValidationError("Sender is required")
        reader_id = session.user_id

        try:
            changed = await run_in_threadpool(
                self.store.mark_read, reader_id, sender_id
            )
        except StorageError as exc:
            logger.error(
                f"Failed to mark messages from {sender_id} read for {reader_id}: {exc}"
            )
            await self._reply(
                session,
                protocol.error_event(
                    StorageError.code, "Messages could not be marked read", "read"
                ),
            )
            return False

        self.unread.clear(reader_id, sender_id)
        logger.debug(f"User {reader_id} read {changed} message(s) from {sender_id}")
        await self.push_unread(reader_id)

        original_sender = self.registry.lookup(sender_id)
        if original_sender is not None:
            await self.deliver(
                original_sender,
                protocol.read_receipt_event(reader_id, datetime.now(timezone.utc)),
            )
        return True

    async def relay_typing(
        self, session: Session, event_type: str, recipient_id: int | None
    ) -> None:
        if recipient_id is None or recipient_id == session.user_id:
            return
        recipient = self.registry.lookup(recipient_id)
        if recipient is not None:
            await self.deliver(
                recipient, protocol.typing_event(event_type, session.user_id)
            )

    async def confirm_registration(self, session: Session) -> None:
        """Idempotent re-registration: confirm, or restore a lost entry."""
        user_id = session.user_id
        if self.registry.is_current(user_id, session.conn):
            await self._reply(session, protocol.presence_event(self.registry.snapshot()))
            return
        if self.registry.lookup(user_id) is not None:
            logger.debug(
                f"Ignoring register from superseded connection {session.conn.conn_id}"
            )
            return
        self.registry.register(user_id, session.conn)
        await self.broadcaster.announce(self.registry.snapshot())

    async def push_unread(self, user_id: int) -> bool:
        """Best-effort unread snapshot push to ``user_id`` if connected."""
        conn = self.registry.lookup(user_id)
        if conn is None:
            return False
        return await self.deliver(
            conn, protocol.unread_counts_event(self.unread.snapshot(user_id))
        )

    async def deliver(self, conn: Connection, payload: dict[str, Any]) -> bool:
        """Push to another user's connection. Failures are logged, not raised."""
        try:
            await conn.send_event(payload)
        except TransportError as exc:
            logger.warning(
                f"Push of {payload.get('type')} to user {conn.user_id} failed: {exc}"
            )
            return False
        return True

    async def _reply(self, session: Session, payload: dict[str, Any]) -> None:
        # The read loop notices a dead transport on its next receive.
        await self.deliver(session.conn, payload)
