"""Tests for the command-line entry point."""

from __future__ import annotations

from unittest.mock import patch

from grtc.config import DEFAULTS
from grtc.main import build_session, run_cli
from grtc.peer.session import ConnectionState, Role
from grtc.peer.store import HttpSignalStore
from grtc.peer.transport import SocketTransport


class TestBuildSession:
    """Tests for wiring a session from config."""

    def test_initiator_gets_fresh_room(self):
        """Without a room id the initiator gets a new one."""
        session = build_session(dict(DEFAULTS))
        assert session.room_id
        assert session.role == Role.INITIATOR
        assert isinstance(session.store, HttpSignalStore)
        assert isinstance(session.transport, SocketTransport)
        assert session.transport.initiator
        assert session.state == ConnectionState.IDLE

    def test_joinee_uses_configured_room(self):
        """A joinee keeps the room id it was given."""
        config = dict(DEFAULTS, role="joinee", room_id="abc", poll_interval=2.0)
        session = build_session(config)
        assert session.room_id == "abc"
        assert not session.transport.initiator
        assert session.discovery.interval == 2.0


class TestRunCli:
    """Tests for the interactive command loop."""

    def test_commands(self, capsys):
        """Each command prints its answer; send before ready is refused."""
        session = build_session(dict(DEFAULTS, room_id="abc"))
        commands = ["help", "status", "peers", "send hi", "bogus", "exit"]

        with patch("builtins.input", side_effect=commands):
            run_cli(session)

        out = capsys.readouterr().out
        assert "Commands:" in out
        assert "Room abc [initiator]: idle" in out
        assert "No peers found." in out
        assert "not ready" in out
        assert "Unknown command" in out
        assert "Exiting" in out

    def test_eof_exits(self, capsys):
        """End of input leaves the loop."""
        session = build_session(dict(DEFAULTS, room_id="abc"))
        with patch("builtins.input", side_effect=EOFError):
            run_cli(session)
        assert "Exiting" in capsys.readouterr().out
