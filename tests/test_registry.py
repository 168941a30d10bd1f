"""Tests for the connection registry."""

import threading

from arouzy_chat.registry import ConnectionRegistry

from .fakes import FakeConnection


class TestRegister:
    """Registration and replacement."""

    def test_register_and_lookup(self):
        registry = ConnectionRegistry()
        conn = FakeConnection(1)
        assert registry.register(1, conn) is None
        assert registry.lookup(1) is conn
        assert 1 in registry
        assert len(registry) == 1

    def test_reregister_replaces_previous(self):
        """A second connection for the same user wins; the first is returned."""
        registry = ConnectionRegistry()
        first, second = FakeConnection(1), FakeConnection(1)
        registry.register(1, first)
        assert registry.register(1, second) is first
        assert registry.lookup(1) is second
        assert registry.is_current(1, second)
        assert not registry.is_current(1, first)
        assert len(registry) == 1

    def test_lookup_unknown_user(self):
        assert ConnectionRegistry().lookup(42) is None


class TestDeregister:
    """Removal by user and by connection."""

    def test_deregister_absent_is_noop(self):
        registry = ConnectionRegistry()
        assert registry.deregister(7) is False
        assert registry.snapshot() == set()

    def test_deregister_removes_entry(self):
        registry = ConnectionRegistry()
        registry.register(1, FakeConnection(1))
        assert registry.deregister(1) is True
        assert registry.lookup(1) is None

    def test_deregister_connection_ignores_superseded(self):
        """Closing a replaced connection must not evict its replacement."""
        registry = ConnectionRegistry()
        old, new = FakeConnection(1), FakeConnection(1)
        registry.register(1, old)
        registry.register(1, new)

        assert registry.deregister_connection(old) is None
        assert registry.lookup(1) is new

        assert registry.deregister_connection(new) == 1
        assert registry.lookup(1) is None


class TestSnapshot:
    """Snapshots are detached copies."""

    def test_snapshot_is_a_copy(self):
        registry = ConnectionRegistry()
        registry.register(1, FakeConnection(1))
        snap = registry.snapshot()
        registry.register(2, FakeConnection(2))
        assert snap == {1}
        assert registry.snapshot() == {1, 2}

    def test_connections_lists_current_entries(self):
        registry = ConnectionRegistry()
        a, b = FakeConnection(1), FakeConnection(2)
        registry.register(1, a)
        registry.register(2, b)
        assert set(map(id, registry.connections())) == {id(a), id(b)}

    def test_concurrent_registration(self):
        registry = ConnectionRegistry()

        def worker(start: int):
            for user_id in range(start, start + 100):
                registry.register(user_id, FakeConnection(user_id))

        threads = [threading.Thread(target=worker, args=(i * 100,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == 800
        assert registry.snapshot() == set(range(800))
