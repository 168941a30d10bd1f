"""In-memory unread tally: recipient -> sender -> pending count."""

from __future__ import annotations

import threading
from collections.abc import Mapping


class UnreadCounter:
    """Process-lifetime cache of unacknowledged message counts.

    The tally is reconstructable from the durable store (messages with no
    read timestamp, grouped by sender). Mutations are serialized by a lock;
    each recipient's inner mapping is replaced rather than edited so that
    snapshots never race a concurrent writer.
    """

    def __init__(self) -> None:
        self._counts: dict[int, dict[int, int]] = {}
        self._lock = threading.Lock()

    def increment(self, recipient_id: int, sender_id: int) -> int:
        """Add one pending message from ``sender_id``. Returns the new count."""
        with self._lock:
            current = dict(self._counts.get(recipient_id, {}))
            current[sender_id] = current.get(sender_id, 0) + 1
            self._counts[recipient_id] = current
            return current[sender_id]

    def clear(self, recipient_id: int, sender_id: int) -> None:
        """Reset the pair to zero. The entry is kept."""
        with self._lock:
            current = dict(self._counts.get(recipient_id, {}))
            current[sender_id] = 0
            self._counts[recipient_id] = current

    def snapshot(self, recipient_id: int) -> dict[int, int]:
        """Return a copy of ``recipient_id``'s counts."""
        return dict(self._counts.get(recipient_id, {}))

    def hydrate(
        self, recipient_id: int, durable_counts: Mapping[int, int]
    ) -> dict[int, int]:
        """Seed counts from the durable store without overwriting memory.

        Senders already present in memory keep their in-memory count, since
        it reflects events newer than the durable snapshot. Returns the
        merged snapshot.
        """
        with self._lock:
            current = dict(self._counts.get(recipient_id, {}))
            for sender_id, count in durable_counts.items():
                if sender_id not in current and count > 0:
                    current[sender_id] = count
            self._counts[recipient_id] = current
            return dict(current)

    def total(self, recipient_id: int) -> int:
        return sum(self._counts.get(recipient_id, {}).values())
