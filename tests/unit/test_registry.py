"""Unit tests for SessionRegistry."""

import asyncio

import pytest

from deckterm.core.exceptions import NotFoundError, SpawnFailure
from deckterm.services.persistence import PersistedSession, PersistenceError
from deckterm.services.registry import MAX_DIMENSION, SessionRegistry, SessionState
from tests.mocks.fake_terminal import FakePersistenceBackend, FakeProcess


class TestCreate:
    async def test_create_registers_active_session(self, registry, spawner):
        session = await registry.create("alice", "alice@example.com", "/tmp", 100, 40)

        assert session.state == SessionState.ACTIVE
        assert registry.get(session.id) is session
        assert session.process is spawner.last
        assert spawner.last.cmd == ["/bin/sh", "-il"]
        assert spawner.last.cwd == "/tmp"
        assert session.persistent_name is None

    async def test_shell_env_carries_terminal_size(self, registry, spawner):
        await registry.create("alice", "alice@example.com", "/", 132, 43)
        env = spawner.last.env
        assert env["TERM"] == "xterm-256color"
        assert env["COLORTERM"] == "truecolor"
        assert env["COLUMNS"] == "132"
        assert env["LINES"] == "43"

    async def test_ids_are_unique_and_underscore_free(self, registry):
        ids = {(await registry.create("alice", "a@example.com", "/", 80, 24)).id for _ in range(20)}
        assert len(ids) == 20
        assert all("_" not in i for i in ids)

    async def test_spawn_failure_leaves_no_session(self, registry, spawner):
        spawner.fail = True
        with pytest.raises(SpawnFailure):
            await registry.create("alice", "a@example.com", "/", 80, 24)
        assert registry.all() == []
        assert registry.count() == 0

    async def test_unexpected_spawn_error_is_converted(self, clock):
        async def broken_spawner(*args, **kwargs):
            raise OSError("pty exhausted")

        registry = SessionRegistry(shell=["/bin/sh"], spawner=broken_spawner, clock=clock)
        with pytest.raises(SpawnFailure, match="pty exhausted"):
            await registry.create("alice", "a@example.com", "/", 80, 24)
        assert registry.all() == []

    async def test_in_flight_creation_counts(self, clock):
        release = asyncio.Event()

        async def slow_spawner(cmd, **kwargs):
            await release.wait()
            return FakeProcess(cmd, kwargs["on_output"], kwargs["on_exit"])

        registry = SessionRegistry(shell=["/bin/sh"], spawner=slow_spawner, clock=clock)
        task = asyncio.create_task(registry.create("alice", "a@example.com", "/", 80, 24))
        await asyncio.sleep(0)

        assert registry.count() == 1
        assert registry.count_by_owner("alice") == 1
        # Not listed until the shell is actually running
        assert registry.list_by_owner("alice") == []

        release.set()
        session = await task
        assert registry.list_by_owner("alice") == [session]

    async def test_persistent_create_without_backend_fails(self, registry):
        with pytest.raises(SpawnFailure):
            await registry.create("alice", "a@example.com", "/", 80, 24, use_persistence=True)
        assert registry.all() == []

    async def test_persistent_create_names_tmux_session(self, spawner, clock):
        backend = FakePersistenceBackend()
        registry = SessionRegistry(shell=["/bin/sh"], backend=backend, spawner=spawner, clock=clock)

        session = await registry.create("alice", "a@example.com", "/srv", 90, 20, use_persistence=True)

        assert session.persistent_name == f"deckterm_alice_{session.id}"
        assert session.is_persistent
        assert backend.sessions[session.persistent_name].cwd == "/srv"
        assert session.process is backend.attached[session.persistent_name]

    async def test_persistent_attach_failure_kills_tmux_session(self, spawner, clock):
        backend = FakePersistenceBackend()

        async def failing_attach(name, *args):
            raise PersistenceError("attach refused")

        backend.attach = failing_attach
        registry = SessionRegistry(shell=["/bin/sh"], backend=backend, spawner=spawner, clock=clock)

        with pytest.raises(SpawnFailure):
            await registry.create("alice", "a@example.com", "/", 80, 24, use_persistence=True)
        assert backend.sessions == {}
        assert len(backend.killed) == 1


class TestLookup:
    async def test_get_unknown_raises(self, registry):
        with pytest.raises(NotFoundError):
            registry.get("missing")

    async def test_list_by_owner_filters_and_sorts(self, registry, clock):
        a1 = await registry.create("alice", "a@example.com", "/", 80, 24)
        clock.advance(1)
        await registry.create("bob", "b@example.com", "/", 80, 24)
        clock.advance(1)
        a2 = await registry.create("alice", "a@example.com", "/", 80, 24)

        assert registry.list_by_owner("alice") == [a1, a2]
        assert registry.count() == 3
        assert registry.count_by_owner("bob") == 1

    async def test_summary_uses_epoch_milliseconds(self, registry, clock):
        session = await registry.create("alice", "a@example.com", "/home", 80, 24)
        assert session.summary() == {"id": session.id, "cwd": "/home", "created_at": int(clock.now * 1000)}


class TestMutation:
    async def test_touch_never_moves_backwards(self, registry, clock):
        session = await registry.create("alice", "a@example.com", "/", 80, 24)
        clock.advance(10)
        registry.touch(session.id)
        touched_at = session.last_activity_at

        clock.advance(-5)
        registry.touch(session.id)
        assert session.last_activity_at == touched_at

    async def test_resize_clamps_and_touches(self, registry, spawner, clock):
        session = await registry.create("alice", "a@example.com", "/", 80, 24)
        clock.advance(3)

        await registry.resize(session.id, 0, 100_000)

        assert (session.cols, session.rows) == (1, MAX_DIMENSION)
        assert (spawner.last.cols, spawner.last.rows) == (1, MAX_DIMENSION)
        assert session.last_activity_at == clock.now

    async def test_resize_updates_persistent_pane(self, spawner, clock):
        backend = FakePersistenceBackend()
        registry = SessionRegistry(shell=["/bin/sh"], backend=backend, spawner=spawner, clock=clock)
        session = await registry.create("alice", "a@example.com", "/", 80, 24, use_persistence=True)

        await registry.resize(session.id, 132, 50)

        assert backend.sessions[session.persistent_name].cols == 132
        assert backend.sessions[session.persistent_name].rows == 50


class TestRemove:
    async def test_remove_releases_process_once(self, registry, spawner):
        session = await registry.create("alice", "a@example.com", "/", 80, 24)

        removed = await registry.remove(session.id)
        again = await registry.remove(session.id)

        assert removed is session
        assert again is None
        assert spawner.last.close_calls == 1
        with pytest.raises(NotFoundError):
            registry.get(session.id)

    async def test_remove_kills_persistent_session(self, spawner, clock):
        backend = FakePersistenceBackend()
        registry = SessionRegistry(shell=["/bin/sh"], backend=backend, spawner=spawner, clock=clock)
        session = await registry.create("alice", "a@example.com", "/", 80, 24, use_persistence=True)

        await registry.remove(session.id)

        assert backend.killed == [session.persistent_name]

    async def test_remove_can_only_detach(self, spawner, clock):
        backend = FakePersistenceBackend()
        registry = SessionRegistry(shell=["/bin/sh"], backend=backend, spawner=spawner, clock=clock)
        session = await registry.create("alice", "a@example.com", "/", 80, 24, use_persistence=True)

        await registry.remove(session.id, kill_persistent=False)

        assert backend.killed == []
        assert session.persistent_name in backend.sessions
        assert backend.attached[session.persistent_name].closed


class TestAdopt:
    async def test_adopt_registers_recovered_session(self, spawner, clock):
        backend = FakePersistenceBackend()
        backend.sessions["deckterm_alice_abc"] = PersistedSession("deckterm_alice_abc", "/work", 100, 30)
        registry = SessionRegistry(shell=["/bin/sh"], backend=backend, spawner=spawner, clock=clock)

        session = await registry.adopt(backend.sessions["deckterm_alice_abc"], owner_id="alice", session_id="abc")

        assert session.owner_email == "recovered"
        assert session.state == SessionState.ACTIVE
        assert (session.cwd, session.cols, session.rows) == ("/work", 100, 30)
        assert registry.get("abc") is session

    async def test_adopt_is_idempotent(self, spawner, clock):
        backend = FakePersistenceBackend()
        persisted = PersistedSession("deckterm_alice_abc", "/", 80, 24)
        backend.sessions[persisted.name] = persisted
        registry = SessionRegistry(shell=["/bin/sh"], backend=backend, spawner=spawner, clock=clock)

        first, second = await asyncio.gather(
            registry.adopt(persisted, owner_id="alice", session_id="abc"),
            registry.adopt(persisted, owner_id="alice", session_id="abc"),
        )
        assert first is second
        assert len(registry.all()) == 1

    async def test_adopt_attach_failure_raises_spawn_failure(self, spawner, clock):
        backend = FakePersistenceBackend()
        persisted = PersistedSession("deckterm_alice_abc", "/", 80, 24)
        backend.sessions[persisted.name] = persisted
        backend.fail_attach.add(persisted.name)
        registry = SessionRegistry(shell=["/bin/sh"], backend=backend, spawner=spawner, clock=clock)

        with pytest.raises(SpawnFailure):
            await registry.adopt(persisted, owner_id="alice", session_id="abc")
        assert registry.all() == []
        assert "abc" not in registry._locks


class TestSubscribers:
    async def test_channel_belongs_to_one_session(self, registry):
        s1 = await registry.create("alice", "a@example.com", "/", 80, 24)
        s2 = await registry.create("alice", "a@example.com", "/", 80, 24)
        channel = object()

        registry.add_subscriber(s1.id, channel)
        registry.add_subscriber(s2.id, channel)

        assert registry.subscribers(s1.id) == []
        assert registry.subscribers(s2.id) == [channel]

    async def test_take_subscribers_empties_set(self, registry):
        session = await registry.create("alice", "a@example.com", "/", 80, 24)
        a, b = object(), object()
        registry.add_subscriber(session.id, a)
        registry.add_subscriber(session.id, b)

        taken = registry.take_subscribers(session.id)

        assert set(taken) == {a, b}
        assert registry.subscribers(session.id) == []
        assert not registry.discard_subscriber(session.id, a)

    async def test_cannot_subscribe_to_finished_session(self, registry):
        session = await registry.create("alice", "a@example.com", "/", 80, 24)
        session.state = SessionState.EXITED
        with pytest.raises(NotFoundError):
            registry.add_subscriber(session.id, object())
