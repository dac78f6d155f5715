"""Tests for the tmux-backed async session manager."""

import os
import shutil
import time

import pytest

from codespace_mcp.config import EXITED_MARKER, MISE_PATH, MISSING_PATH_EXIT
from codespace_mcp.errors import MalformedRequest, NotFound, RemoteCommandError, UnsupportedEnvironment
from codespace_mcp.sessions import Segment, SessionManager, _PANE_MARKER, parse_input
from fakes.connections import LocalShellConnection, ScriptedConnection


@pytest.fixture
def connection():
    return ScriptedConnection()


@pytest.fixture
def manager(connection):
    return SessionManager(connection, "/workspaces/app")


class TestParseInput:
    def test_literal_then_enter(self):
        assert parse_input("ls -la{enter}") == [Segment("literal", "ls -la"), Segment("key", "Enter")]

    def test_consecutive_keys(self):
        assert parse_input("{up}{up}{enter}") == [
            Segment("key", "Up"),
            Segment("key", "Up"),
            Segment("key", "Enter"),
        ]

    def test_all_named_keys(self):
        keys = [segment.value for segment in parse_input("{down}{left}{right}{backspace}")]
        assert keys == ["Down", "Left", "Right", "BSpace"]

    def test_unknown_token_stays_literal(self):
        assert parse_input("echo {foo}{enter}") == [Segment("literal", "echo {foo}"), Segment("key", "Enter")]

    def test_uppercase_token_stays_literal(self):
        assert parse_input("{ENTER}") == [Segment("literal", "{ENTER}")]

    def test_plain_text(self):
        assert parse_input("y") == [Segment("literal", "y")]

    def test_empty(self):
        assert parse_input("") == []


class TestStart:
    def test_sets_remain_on_exit_before_running_command(self, manager, connection):
        manager.start("build", "make all")
        script = connection.commands[-1]
        assert script.startswith(MISE_PATH)
        assert "new-session -d -s codespace-mcp-build -x 200 -y 50 -c /workspaces/app" in script
        assert script.index("remain-on-exit on") < script.index("respawn-pane -k")
        assert script.endswith("'make all'")
        assert manager.sessions["build"]["state"] == "running"

    def test_tmux_probe_is_cached(self, manager, connection):
        manager.start("one", "true")
        manager.start("two", "true")
        probes = [command for command in connection.commands if "command -v tmux" in command]
        assert len(probes) == 1

    def test_installs_tmux_when_missing(self, manager, connection):
        connection.queue("command -v tmux", exit_code=1)
        manager.start("one", "true")
        assert any("mise use -g tmux" in command for command in connection.commands)

    def test_install_failure_is_unsupported(self, manager, connection):
        connection.queue("command -v tmux", exit_code=1)
        connection.queue("mise use -g tmux", stderr="curl: not found", exit_code=127)
        with pytest.raises(UnsupportedEnvironment):
            manager.start("one", "true")
        assert not any("new-session" in command for command in connection.commands)

    def test_invalid_id_touches_nothing(self, manager, connection):
        with pytest.raises(MalformedRequest):
            manager.start("bad id;rm", "true")
        assert connection.commands == []

    def test_start_failure_surfaces(self, manager, connection):
        connection.queue("new-session", stderr="duplicate session: codespace-mcp-x", exit_code=1)
        with pytest.raises(RemoteCommandError):
            manager.start("x", "true")
        assert "x" not in manager.sessions

    def test_running_id_is_rejected_before_target(self, manager, connection):
        manager.start("dev", "npm run dev")
        before = dict(manager.sessions["dev"])
        sent = len(connection.commands)
        with pytest.raises(MalformedRequest):
            manager.start("dev", "echo other")
        assert len(connection.commands) == sent
        assert manager.sessions["dev"] == before

    def test_failed_restart_keeps_previous_entry(self, manager, connection):
        manager.sessions["web"] = {"state": "exited", "created": "earlier"}
        connection.queue("new-session", stderr="duplicate session: codespace-mcp-web", exit_code=1)
        with pytest.raises(RemoteCommandError):
            manager.start("web", "true")
        assert manager.sessions["web"] == {"state": "exited", "created": "earlier"}


class TestWrite:
    def test_one_call_per_segment_in_order(self, manager, connection):
        manager.write("s1", "git status{enter}{up}")
        sends = [command.split("\n")[-1] for command in connection.commands]
        assert sends == [
            "tmux send-keys -t =codespace-mcp-s1: -l -- 'git status'",
            "tmux send-keys -t =codespace-mcp-s1: Enter",
            "tmux send-keys -t =codespace-mcp-s1: Up",
        ]

    def test_missing_session(self, manager, connection):
        connection.queue("send-keys", stderr="can't find pane: =codespace-mcp-s1:", exit_code=1)
        with pytest.raises(NotFound):
            manager.write("s1", "x")


class TestRead:
    def test_strips_trailing_blank_rows(self, manager, connection):
        connection.queue("capture-pane", stdout=f"$ make\nbuilding\n\n\n   \n{_PANE_MARKER}\n0 \n")
        assert manager.read("s1") == "$ make\nbuilding"

    def test_marks_exited_pane(self, manager, connection):
        manager.sessions["s1"] = {"state": "running", "created": ""}
        connection.queue("capture-pane", stdout=f"done\n\n{_PANE_MARKER}\n1 0\n")
        assert manager.read("s1") == f"done\n{EXITED_MARKER}"
        assert manager.sessions["s1"]["state"] == "exited"

    def test_exited_with_empty_pane(self, manager, connection):
        connection.queue("capture-pane", stdout=f"\n\n{_PANE_MARKER}\n1 2\n")
        assert manager.read("s1") == EXITED_MARKER

    def test_uses_exact_match_targets(self, manager, connection):
        connection.queue("capture-pane", stdout=f"{_PANE_MARKER}\n0 \n")
        manager.read("s1")
        assert "has-session -t =codespace-mcp-s1 " in connection.commands[-1]
        assert "capture-pane -t =codespace-mcp-s1: -p -S -100" in connection.commands[-1]

    def test_missing_session(self, manager, connection):
        connection.queue("capture-pane", exit_code=MISSING_PATH_EXIT)
        with pytest.raises(NotFound):
            manager.read("s1")


class TestStopAndList:
    def test_stop(self, manager, connection):
        manager.sessions["s1"] = {"state": "running", "created": ""}
        manager.stop("s1")
        assert "tmux kill-session -t =codespace-mcp-s1" in connection.commands[-1]
        assert manager.sessions["s1"]["state"] == "stopped"

    def test_stop_missing_session(self, manager, connection):
        connection.queue("kill-session", stderr="can't find session: =codespace-mcp-s1", exit_code=1)
        with pytest.raises(NotFound):
            manager.stop("s1")

    def test_stop_other_failure(self, manager, connection):
        connection.queue("kill-session", stderr="permission denied", exit_code=1)
        with pytest.raises(RemoteCommandError):
            manager.stop("s1")

    def test_list_filters_prefix_and_prunes(self, manager, connection):
        manager.sessions["gone"] = {"state": "running", "created": ""}
        manager.sessions["web"] = {"state": "exited", "created": ""}
        connection.queue(
            "list-sessions",
            stdout="codespace-mcp-web 1700000000 1700000100\nmain 1700000000 1700000000\ncodespace-mcp-sh-1 1700000200 1700000300\n",
        )
        infos = manager.list()
        assert [(info.session_id, info.state) for info in infos] == [("web", "exited"), ("sh-1", "running")]
        assert infos[1].to_dict() == {"id": "sh-1", "created": "1700000200", "activity": "1700000300", "state": "running"}
        assert "gone" not in manager.sessions

    def test_list_without_server(self, manager, connection):
        assert manager.list() == []


@pytest.mark.skipif(shutil.which("tmux") is None, reason="tmux not installed")
class TestLocalTmux:
    """Full lifecycle against a real tmux server on this machine."""

    def test_echo_lifecycle(self, tmp_path):
        manager = SessionManager(LocalShellConnection(), str(tmp_path))
        session_id = f"lifecycle-{os.getpid()}"
        manager.start(session_id, "echo hello")
        try:
            deadline = time.time() + 10
            output = manager.read(session_id)
            while EXITED_MARKER not in output and time.time() < deadline:
                time.sleep(0.2)
                output = manager.read(session_id)

            assert "hello" in output
            assert output.endswith(EXITED_MARKER)
            assert session_id in [info.session_id for info in manager.list()]
            assert manager.sessions[session_id]["state"] == "exited"
        finally:
            manager.stop(session_id)

        with pytest.raises(NotFound):
            manager.read(session_id)
