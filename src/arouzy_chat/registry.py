"""
Connection registry: which users are online on this server instance.

Writers are serialized by a lock and publish a fresh mapping on every change
(copy-on-write), so readers never take the lock and always observe either
the state before or the state after a mutation.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from .connection import Connection


class ConnectionRegistry:
    """Maps a user id to at most one live connection."""

    def __init__(self) -> None:
        self._entries: dict[int, Connection] = {}
        self._write_lock = threading.Lock()

    def register(self, user_id: int, conn: Connection) -> Connection | None:
        """Register ``conn`` for ``user_id``, replacing any previous entry.

        The replaced connection (if any) is returned but not closed; its own
        read loop is expected to fail and run its close path.
        """
        with self._write_lock:
            previous = self._entries.get(user_id)
            entries = dict(self._entries)
            entries[user_id] = conn
            self._entries = entries
        if previous is not None and previous is not conn:
            logger.info(
                f"User {user_id} re-registered; connection {previous.conn_id} replaced"
                f" by {conn.conn_id}"
            )
        return previous

    def deregister(self, user_id: int) -> bool:
        """Remove the entry for ``user_id``. Returns False if there was none."""
        with self._write_lock:
            if user_id not in self._entries:
                return False
            entries = dict(self._entries)
            del entries[user_id]
            self._entries = entries
        return True

    def deregister_connection(self, conn: Connection) -> int | None:
        """Remove whichever entry holds exactly ``conn``.

        Returns the user id that was removed, or None when ``conn`` is no
        longer registered (already removed, or replaced by a newer one).
        """
        with self._write_lock:
            for user_id, current in self._entries.items():
                if current is conn:
                    entries = dict(self._entries)
                    del entries[user_id]
                    self._entries = entries
                    return user_id
        return None

    def lookup(self, user_id: int) -> Connection | None:
        return self._entries.get(user_id)

    def is_current(self, user_id: int, conn: Connection) -> bool:
        return self._entries.get(user_id) is conn

    def snapshot(self) -> set[int]:
        """Return the set of online user ids."""
        return set(self._entries)

    def connections(self) -> list[Connection]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries
