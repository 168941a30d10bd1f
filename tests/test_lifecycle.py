"""Tests for connect and disconnect sequencing."""

import asyncio

import anyio
import pytest

from arouzy_chat.lifecycle import ConnectionLifecycle
from arouzy_chat.router import Session, SessionState

from .fakes import FakeConnection


@pytest.fixture
def lifecycle(core, authenticator):
    return ConnectionLifecycle(
        core.registry,
        core.unread,
        core.store,
        core.broadcaster,
        core.router,
        authenticator,
    )


@pytest.fixture
def failing_lifecycle(failing_core, authenticator):
    return ConnectionLifecycle(
        failing_core.registry,
        failing_core.unread,
        failing_core.store,
        failing_core.broadcaster,
        failing_core.router,
        authenticator,
    )


def authenticated(conn: FakeConnection) -> Session:
    session = Session()
    session.authenticate(conn.user_id, conn)
    return session


class TestOpen:
    def test_registers_hydrates_and_announces(self, core, lifecycle):
        core.store.append(5, 1, "while you were away")
        core.store.append(5, 1, "still away")
        alice = FakeConnection(1)
        session = authenticated(alice)

        counts = asyncio.run(lifecycle.open(session))

        assert counts == {5: 2}
        assert session.state is SessionState.ACTIVE
        assert core.registry.lookup(1) is alice
        assert [p["type"] for p in alice.sent] == ["unread_counts", "presence"]
        assert alice.sent[0]["counts"] == {"5": 2}
        assert alice.sent[1]["userIds"] == [1]

    def test_other_users_see_new_presence(self, core, lifecycle):
        alice, bob = FakeConnection(1), FakeConnection(2)

        async def scenario():
            await lifecycle.open(authenticated(alice))
            await lifecycle.open(authenticated(bob))

        asyncio.run(scenario())

        assert alice.of_type("presence")[-1]["userIds"] == [1, 2]
        assert bob.of_type("presence")[-1]["userIds"] == [1, 2]

    def test_in_memory_counts_win_on_hydrate(self, core, lifecycle):
        core.store.append(5, 1, "a")
        core.store.append(5, 1, "b")
        core.unread.increment(1, 5)

        counts = asyncio.run(lifecycle.open(authenticated(FakeConnection(1))))

        assert counts == {5: 1}

    def test_storage_failure_falls_back_to_memory(self, failing_core, failing_lifecycle):
        failing_core.unread.increment(1, 5)
        alice = FakeConnection(1)

        counts = asyncio.run(failing_lifecycle.open(authenticated(alice)))

        assert counts == {5: 1}
        error, unread, presence = alice.sent
        assert error["type"] == "error"
        assert error["event"] == "hydrate"
        assert unread["counts"] == {"5": 1}
        assert presence["userIds"] == [1]


class TestClose:
    def test_deregisters_and_announces(self, core, lifecycle):
        alice, bob = FakeConnection(1), FakeConnection(2)
        alice_session, bob_session = authenticated(alice), authenticated(bob)

        async def scenario():
            await lifecycle.open(alice_session)
            await lifecycle.open(bob_session)
            return await lifecycle.close(bob_session)

        assert asyncio.run(scenario()) is True
        assert bob.closed
        assert core.registry.snapshot() == {1}
        assert alice.of_type("presence")[-1]["userIds"] == [1]

    def test_close_is_reentrant(self, core, lifecycle):
        alice = FakeConnection(1)
        session = authenticated(alice)

        async def scenario():
            await lifecycle.open(session)
            first = await lifecycle.close(session)
            second = await lifecycle.close(session)
            return first, second

        assert asyncio.run(scenario()) == (True, False)
        assert core.broadcaster.broadcast_count == 2

    def test_superseded_close_keeps_replacement(self, core, lifecycle):
        old, new = FakeConnection(1), FakeConnection(1)
        old_session, new_session = authenticated(old), authenticated(new)

        async def scenario():
            await lifecycle.open(old_session)
            await lifecycle.open(new_session)
            before = core.broadcaster.broadcast_count
            await lifecycle.close(old_session)
            return before

        before = asyncio.run(scenario())

        assert core.registry.lookup(1) is new
        assert old.closed
        assert not new.closed
        assert core.broadcaster.broadcast_count == before

    def test_close_before_authentication(self, lifecycle):
        session = Session()
        assert asyncio.run(lifecycle.close(session)) is True
        assert session.state is SessionState.CLOSED


class TestRunSession:
    """The read loop always ends in Closed, even when the task is cancelled."""

    def test_disconnect_announces_departure(self, core, lifecycle):
        alice = FakeConnection(1)
        bob = FakeConnection(2, inbound=['{"type":"ping"}'])

        async def scenario():
            await lifecycle.open(authenticated(alice))
            await lifecycle.run_session(authenticated(bob))

        asyncio.run(scenario())

        assert bob.of_type("pong") == [{"type": "pong"}]
        assert bob.closed
        assert core.registry.snapshot() == {1}
        assert alice.of_type("presence")[-1]["userIds"] == [1]

    def test_cancelled_session_still_announces_departure(self, core, lifecycle):
        alice = FakeConnection(1)
        bob = FakeConnection(2, block_when_empty=True)
        bob_session = authenticated(bob)

        async def scenario():
            await lifecycle.open(authenticated(alice))
            async with anyio.create_task_group() as tg:
                tg.start_soon(lifecycle.run_session, bob_session)
                while bob_session.state is not SessionState.ACTIVE:
                    await anyio.sleep(0.01)
                tg.cancel_scope.cancel()

        asyncio.run(scenario())

        assert bob_session.state is SessionState.CLOSED
        assert bob.closed
        assert core.registry.snapshot() == {1}
        assert alice.of_type("presence")[-1]["userIds"] == [1]

    def test_remaining_users_hear_before_socket_closes(self, core, lifecycle):
        alice, bob = FakeConnection(1), FakeConnection(2)
        bob_session = authenticated(bob)
        seen_open: list[bool] = []
        original_push = alice.send_event

        async def recording_push(payload):
            seen_open.append(not bob.closed)
            await original_push(payload)

        alice.send_event = recording_push

        async def scenario():
            await lifecycle.open(authenticated(alice))
            await lifecycle.open(bob_session)
            seen_open.clear()
            await lifecycle.close(bob_session)

        asyncio.run(scenario())

        assert seen_open == [True]
        assert alice.of_type("presence")[-1]["userIds"] == [1]
