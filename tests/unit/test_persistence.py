"""Unit tests for tmux session naming and the TmuxBackend command layer."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from deckterm.services.persistence import (
    PersistedSession,
    PersistenceError,
    TmuxBackend,
    parse_session_name,
    session_name,
)


class TestSessionNames:
    def test_round_trip(self):
        name = session_name("deckterm", "alice", "0f3c")
        assert name == "deckterm_alice_0f3c"
        assert parse_session_name("deckterm", name) == ("alice", "0f3c")

    def test_owner_with_unsafe_characters_is_encoded(self):
        name = session_name("deckterm", "team_ops.eu@corp", "abc")
        assert name == "deckterm_team-5fops-2eeu-40corp_abc"
        assert parse_session_name("deckterm", name) == ("team_ops.eu@corp", "abc")

    def test_similar_owners_get_distinct_names(self):
        owners = ["alice.smith", "alice@smith", "alice-smith", "alice_smith"]
        names = {session_name("deckterm", owner, "abc") for owner in owners}
        assert len(names) == len(owners)
        assert [parse_session_name("deckterm", session_name("deckterm", o, "abc"))[0] for o in owners] == owners

    def test_non_ascii_owner(self):
        name = session_name("deckterm", "jos\u00e9", "abc")
        assert parse_session_name("deckterm", name) == ("jos\u00e9", "abc")

    def test_malformed_encoding_rejected(self):
        assert parse_session_name("deckterm", "deckterm_team_ops_abc") is None
        assert parse_session_name("deckterm", "deckterm_bad-zz_abc") is None
        assert parse_session_name("deckterm", "deckterm_short-4_abc") is None
        # "-61" is "a", which is never escaped
        assert parse_session_name("deckterm", "deckterm_-61lice_abc") is None

    def test_foreign_prefix(self):
        assert parse_session_name("deckterm", "work_alice_abc") is None

    def test_missing_parts(self):
        assert parse_session_name("deckterm", "deckterm_abc") is None
        assert parse_session_name("deckterm", "deckterm__abc") is None
        assert parse_session_name("deckterm", "deckterm_alice_") is None


class TestTmuxBackend:
    async def test_list_existing_parses_and_filters(self):
        backend = TmuxBackend(prefix="deckterm")
        output = (
            "deckterm_alice_a1\t/home/alice\t120\t30\n"
            "scratch\t/tmp\t80\t24\n"
            "deckterm_bob_b2\t/srv\t200\t50\n"
            "garbage line\n"
        )
        with patch.object(backend, "_run", AsyncMock(return_value=output)) as run:
            sessions = await backend.list_existing()

        assert sessions == [
            PersistedSession("deckterm_alice_a1", "/home/alice", 120, 30),
            PersistedSession("deckterm_bob_b2", "/srv", 200, 50),
        ]
        assert run.await_args.args[0] == "list-sessions"

    async def test_list_existing_without_server(self):
        backend = TmuxBackend()
        error = PersistenceError("no server running on /tmp/tmux-1000/default")
        with patch.object(backend, "_run", AsyncMock(side_effect=error)):
            assert await backend.list_existing() == []

    async def test_list_existing_other_errors_propagate(self):
        backend = TmuxBackend()
        with patch.object(backend, "_run", AsyncMock(side_effect=PersistenceError("permission denied"))):
            with pytest.raises(PersistenceError):
                await backend.list_existing()

    async def test_create_detached_command(self):
        backend = TmuxBackend()
        with patch.object(backend, "_run", AsyncMock(return_value="")) as run:
            await backend.create_detached("deckterm_alice_a1", ["/bin/bash", "-il"], "/home/alice", 120, 30)

        run.assert_awaited_once_with(
            "new-session", "-d",
            "-s", "deckterm_alice_a1",
            "-x", "120",
            "-y", "30",
            "-c", "/home/alice",
            "/bin/bash", "-il",
        )

    async def test_kill_and_resize_target_exact_name(self):
        backend = TmuxBackend()
        with patch.object(backend, "_run", AsyncMock(return_value="")) as run:
            await backend.resize_pane("deckterm_alice_a1", 90, 20)
            await backend.kill("deckterm_alice_a1")

        assert run.await_args_list[0].args == ("resize-window", "-t", "=deckterm_alice_a1", "-x", "90", "-y", "20")
        assert run.await_args_list[1].args == ("kill-session", "-t", "=deckterm_alice_a1")

    async def test_has_session(self):
        backend = TmuxBackend()
        with patch.object(backend, "_run", AsyncMock(return_value="")) as run:
            assert await backend.has_session("deckterm_alice_a1")
        assert run.await_args.args == ("has-session", "-t", "=deckterm_alice_a1")

        missing = PersistenceError("can't find session: deckterm_alice_a1")
        with patch.object(backend, "_run", AsyncMock(side_effect=missing)):
            assert not await backend.has_session("deckterm_alice_a1")

    async def test_attach_runs_client_without_tmux_env(self, monkeypatch):
        monkeypatch.setenv("TMUX", "/tmp/tmux-1000/default,1,0")
        backend = TmuxBackend(binary="tmux")
        with patch("deckterm.services.persistence.spawn_pty", AsyncMock()) as spawn:
            await backend.attach("deckterm_alice_a1", 80, 24, lambda d: None, lambda c, s: None)

        args, kwargs = spawn.await_args
        assert args[0] == ["tmux", "attach-session", "-t", "=deckterm_alice_a1"]
        assert "TMUX" not in kwargs["env"]
        assert kwargs["inherit_env"] is False

    async def test_run_reports_failures(self):
        backend = TmuxBackend(binary="/bin/sh")
        with pytest.raises(PersistenceError, match="boom"):
            await backend._run("-c", "echo boom >&2; exit 1")

    async def test_run_kills_hung_command(self):
        backend = TmuxBackend(binary="/bin/sh", command_timeout=0.2)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(PersistenceError, match="timed out"):
            await backend._run("-c", "sleep 10")
        assert loop.time() - started < 5

    async def test_run_missing_binary(self):
        backend = TmuxBackend(binary="/nonexistent/tmux")
        with pytest.raises(PersistenceError):
            await backend._run("list-sessions")

    def test_available(self):
        assert TmuxBackend.available("sh")
        assert not TmuxBackend.available("no-such-tmux-binary")
