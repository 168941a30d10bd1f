"""Connect and disconnect sequencing for WebSocket clients."""

from __future__ import annotations

import anyio
from fastapi import WebSocket
from fastapi.concurrency import run_in_threadpool
from loguru import logger

from . import protocol
from .auth import TokenAuthenticator, extract_bearer
from .connection import WS_4401_UNAUTHORIZED, Connection
from .errors import AuthError, StorageError
from .presence import PresenceBroadcaster
from .registry import ConnectionRegistry
from .router import MessageRouter, Session, SessionState
from .store import MessageStore
from .unread import UnreadCounter


class ConnectionLifecycle:
    """Drives a Session from Connecting to Closed.

    connect:    authenticate -> accept -> register -> hydrate unread
                -> push unread snapshot to this client -> announce presence
    disconnect: deregister this exact connection -> announce presence
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        unread: UnreadCounter,
        store: MessageStore,
        broadcaster: PresenceBroadcaster,
        router: MessageRouter,
        authenticator: TokenAuthenticator,
    ) -> None:
        self.registry = registry
        self.unread = unread
        self.store = store
        self.broadcaster = broadcaster
        self.router = router
        self.authenticator = authenticator

    async def serve(self, websocket: WebSocket) -> None:
        """Handle one WebSocket from handshake to close."""
        session = Session()
        token = websocket.query_params.get("token") or extract_bearer(
            websocket.headers.get("authorization")
        )
        try:
            user_id = self.authenticator.authenticate(token)
        except AuthError as exc:
            logger.warning(f"WebSocket connection refused: {exc}")
            session.transition(SessionState.CLOSED)
            # Closing before accept rejects the handshake.
            await websocket.close(code=WS_4401_UNAUTHORIZED)
            return

        await websocket.accept()
        conn = Connection(websocket, user_id)
        session.authenticate(user_id, conn)
        logger.info(
            f"WebSocket connection established for user {user_id} ({conn.conn_id})"
        )
        await self.run_session(session)

    async def run_session(self, session: Session) -> None:
        """Open, run the read loop, and always reach Closed.

        The close path is shielded: a cancelled connection task must still
        deregister and tell the remaining users.
        """
        try:
            await self.open(session)
            await self.router.run(session)
        finally:
            with anyio.CancelScope(shield=True):
                await self.close(session)

    async def open(self, session: Session) -> dict[int, int]:
        """Authenticated -> Active. Returns the unread snapshot sent to the client."""
        user_id, conn = session.user_id, session.conn
        self.registry.register(user_id, conn)

        counts = await self.hydrate(session)
        await self.router.deliver(conn, protocol.unread_counts_event(counts))
        logger.info(f"Sent initial unread counts to user {user_id}: {counts}")

        await self.broadcaster.announce(self.registry.snapshot())
        session.transition(SessionState.ACTIVE)
        return counts

    async def hydrate(self, session: Session) -> dict[int, int]:
        """Merge durable unread counts into the in-memory tally.

        On storage failure the client is told and the in-memory tally is used.
        """
        user_id = session.user_id
        try:
            durable = await run_in_threadpool(self.store.unread_counts, user_id)
        except StorageError as exc:
            logger.error(f"Error loading unread counts for user {user_id}: {exc}")
            await self.router.deliver(
                session.conn,
                protocol.error_event(
                    StorageError.code, "Unread counts could not be loaded", "hydrate"
                ),
            )
            return self.unread.snapshot(user_id)
        return self.unread.hydrate(user_id, durable)

    async def close(self, session: Session) -> bool:
        """Enter Closed. Safe to call more than once; only the first call acts."""
        if session.state is SessionState.CLOSED:
            return False
        session.transition(SessionState.CLOSED)
        conn = session.conn
        if conn is None:
            return True

        removed = self.registry.deregister_connection(conn)
        if removed is not None:
            logger.info(
                f"WebSocket connection closed for user {removed} ({conn.conn_id})"
            )
            await self.broadcaster.announce(self.registry.snapshot())
        else:
            logger.info(
                f"Superseded connection {conn.conn_id} for user {session.user_id}"
                " closed"
            )
        await conn.close()
        return True
