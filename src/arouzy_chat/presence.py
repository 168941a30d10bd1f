"""Presence fan-out: push the full online set to every connection."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from .errors import TransportError
from .protocol import presence_event
from .registry import ConnectionRegistry

if TYPE_CHECKING:
    from .connection import Connection


class PresenceBroadcaster:
    """Announces the online-user set after every registry mutation.

    Always sends the full set, never a delta, so a client that misses one
    update corrects itself on the next.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        self.broadcast_count = 0

    async def announce(self, online_user_ids: set[int] | None = None) -> None:
        if online_user_ids is None:
            online_user_ids = self.registry.snapshot()
        payload = presence_event(online_user_ids)
        targets = self.registry.connections()
        self.broadcast_count += 1
        logger.debug(
            f"Presence broadcast #{self.broadcast_count}: {sorted(online_user_ids)}"
            f" to {len(targets)} connection(s)"
        )
        await asyncio.gather(*(self._push(conn, payload) for conn in targets))

    async def _push(self, conn: Connection, payload: dict) -> None:
        if conn.closed:
            return
        try:
            await conn.send_event(payload)
        except TransportError as exc:
            logger.warning(f"Presence push to user {conn.user_id} failed: {exc}")
