"""Tests for the JSON-RPC tool server and the tool registry."""

import io
import json

import pytest

from codespace_mcp.connection import CommandResult
from codespace_mcp.errors import LocalClientError
from codespace_mcp.executor import Executor
from codespace_mcp.main import serve
from codespace_mcp.server import handle_request, negotiate_protocol
from codespace_mcp.sessions import SessionManager, _PANE_MARKER
from codespace_mcp.tools import TOOLS, Runtime, format_command_result
from fakes.connections import LocalShellConnection, ScriptedConnection


class Sleeper:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def tmux():
    return ScriptedConnection()


@pytest.fixture
def sleeper():
    return Sleeper()


@pytest.fixture
def runtime(workspace, tmux, sleeper):
    return Runtime(
        executor=Executor(LocalShellConnection(), str(workspace)),
        sessions=SessionManager(tmux, str(workspace)),
        sleep=sleeper,
        now_ms=lambda: 1234,
    )


def call(runtime, name, arguments=None, req_id=7):
    request = {"jsonrpc": "2.0", "id": req_id, "method": "tools/call", "params": {"name": name, "arguments": arguments or {}}}
    return handle_request(request, runtime)


def text_of(response):
    return response["result"]["content"][0]["text"]


class TestProtocol:
    def test_initialize(self, runtime):
        response = handle_request({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}, runtime)
        assert response["id"] == 1
        assert response["result"]["protocolVersion"] == "2024-11-05"
        assert response["result"]["capabilities"] == {"tools": {}}
        assert response["result"]["serverInfo"]["name"] == "codespace-mcp"

    @pytest.mark.parametrize(
        "requested,expected",
        [("2024-10-07", "2024-10-07"), ("2025-06-18", "2024-11-05"), ("latest", "2024-11-05"), (None, "2024-11-05")],
    )
    def test_negotiation(self, requested, expected):
        assert negotiate_protocol(requested) == expected

    def test_initialized_notification_has_no_reply(self, runtime):
        assert handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"}, runtime) is None

    def test_ping(self, runtime):
        assert handle_request({"jsonrpc": "2.0", "id": 3, "method": "ping"}, runtime) == {"jsonrpc": "2.0", "id": 3, "result": {}}

    def test_tools_list(self, runtime):
        response = handle_request({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}, runtime)
        names = [tool["name"] for tool in response["result"]["tools"]]
        assert names == [
            "remote_view", "remote_edit", "remote_create", "remote_bash", "remote_grep",
            "remote_glob", "remote_write_bash", "remote_read_bash", "remote_stop_bash", "remote_list_bash",
        ]
        assert all(tool["inputSchema"]["type"] == "object" for tool in response["result"]["tools"])

    def test_unknown_method(self, runtime):
        response = handle_request({"jsonrpc": "2.0", "id": 4, "method": "resources/list"}, runtime)
        assert response["error"]["code"] == -32601

    def test_unknown_tool(self, runtime):
        assert call(runtime, "remote_delete")["error"]["code"] == -32601


class TestFileTools:
    def test_create_then_view(self, runtime, workspace):
        path = str(workspace / "src" / "app.py")
        assert text_of(call(runtime, "remote_create", {"path": path, "file_text": "print('hi')\nexit()\n"})) == f"Created {path}"
        assert text_of(call(runtime, "remote_view", {"path": path, "view_range": [2, -1]})) == "2. exit()\n"

    def test_edit_success(self, runtime, workspace):
        path = workspace / "a.txt"
        path.write_text("alpha beta\n")
        response = call(runtime, "remote_edit", {"path": str(path), "old_str": "beta", "new_str": ""})
        assert "isError" not in response["result"]
        assert path.read_text() == "alpha \n"

    def test_ambiguous_edit_is_error_result(self, runtime, workspace):
        path = workspace / "a.txt"
        path.write_text("x x\n")
        response = call(runtime, "remote_edit", {"path": str(path), "old_str": "x", "new_str": "y"})
        assert response["result"]["isError"] is True
        payload = json.loads(text_of(response))
        assert payload["error"] is True
        assert "2 times" in payload["message"]

    def test_missing_file_is_error_result(self, runtime, workspace):
        response = call(runtime, "remote_view", {"path": str(workspace / "missing")})
        assert response["result"]["isError"] is True

    def test_grep_and_glob(self, runtime, workspace):
        (workspace / "a.py").write_text("needle\n")
        assert "a.py:1:needle" in text_of(call(runtime, "remote_grep", {"pattern": "needle"}))
        assert "a.py" in text_of(call(runtime, "remote_glob", {"pattern": "*.py"}))
        assert text_of(call(runtime, "remote_glob", {"pattern": "*.rs"})) == "No matches found."


class TestValidation:
    @pytest.mark.parametrize(
        "name,arguments",
        [
            ("remote_view", {}),
            ("remote_view", {"path": "/x", "view_range": [1, "5"]}),
            ("remote_edit", {"path": "/x", "old_str": "a"}),
            ("remote_create", {"path": 5, "file_text": ""}),
            ("remote_bash", {"command": "ls", "mode": "background"}),
            ("remote_bash", {"command": "ls", "timeout": "soon"}),
            ("remote_bash", {"command": "ls", "env": {"A": 1}}),
            ("remote_write_bash", {"input": "x"}),
            ("remote_read_bash", {"shellId": "bad id"}),
        ],
    )
    def test_malformed_requests_never_reach_target(self, workspace, tmux, sleeper, name, arguments):
        executor_connection = ScriptedConnection()
        runtime = Runtime(Executor(executor_connection, str(workspace)), SessionManager(tmux, str(workspace)), sleep=sleeper)
        response = call(runtime, name, arguments)
        assert response["result"]["isError"] is True
        assert executor_connection.commands == []
        assert tmux.commands == []

    def test_arguments_must_be_object(self, runtime):
        request = {"jsonrpc": "2.0", "id": 9, "method": "tools/call", "params": {"name": "remote_view", "arguments": ["/x"]}}
        response = handle_request(request, runtime)
        assert response["result"]["isError"] is True


class TestBashTools:
    def test_sync_output_format(self, runtime):
        text = text_of(call(runtime, "remote_bash", {"command": "echo out; echo err >&2; exit 3"}))
        assert text == "out\n\nSTDERR:\nerr\n\n[exit code: 3]"

    def test_sync_success_is_plain_stdout(self):
        assert format_command_result(CommandResult("ok\n", "", 0)) == "ok\n"

    def test_stderr_only(self):
        assert format_command_result(CommandResult("", "warn\n", 0)) == "STDERR:\nwarn\n"

    def test_sync_env_and_workdir(self, runtime, workspace):
        (workspace / "sub").mkdir()
        text = text_of(call(runtime, "remote_bash", {"command": "echo $NAME; pwd", "workdir": str(workspace / "sub"), "env": {"NAME": "v"}}))
        assert text == f"v\n{workspace / 'sub'}\n"

    def test_async_start(self, runtime, tmux, sleeper):
        tmux.queue("capture-pane", stdout=f"booting\n{_PANE_MARKER}\n0 \n")
        text = text_of(call(runtime, "remote_bash", {"command": "npm run dev", "mode": "async"}))
        assert text == "Started async session: sh-1234\n\nbooting"
        assert sleeper.calls == [1.0]
        assert any("new-session -d -s codespace-mcp-sh-1234" in command for command in tmux.commands)

    def test_async_with_explicit_id(self, runtime, tmux):
        text = text_of(call(runtime, "remote_bash", {"command": "top", "mode": "async", "shellId": "monitor"}))
        assert text.startswith("Started async session: monitor")

    def test_write_caps_delay(self, runtime, tmux, sleeper):
        tmux.queue("capture-pane", stdout=f"> y\n{_PANE_MARKER}\n0 \n")
        text = text_of(call(runtime, "remote_write_bash", {"shellId": "s1", "input": "y{enter}", "delay": 500}))
        assert text == "> y"
        assert sleeper.calls == [60.0]
        assert sum("send-keys" in command for command in tmux.commands) == 2

    def test_read_default_delay(self, runtime, tmux, sleeper):
        call(runtime, "remote_read_bash", {"shellId": "s1"})
        assert sleeper.calls == [2.0]

    def test_stop_and_list(self, runtime, tmux):
        assert text_of(call(runtime, "remote_stop_bash", {"shellId": "s1"})) == "Session s1 stopped."
        assert text_of(call(runtime, "remote_list_bash")) == "No active sessions."
        tmux.queue("list-sessions", stdout="codespace-mcp-s2 100 200\n")
        assert text_of(call(runtime, "remote_list_bash")) == "s2 created=100 activity=200 state=running"


class TestFaults:
    def test_crash_is_internal_error(self, runtime):
        class Broken:
            def view_file(self, path, view_range=None):
                raise RuntimeError("kaboom")

        runtime.executor = Broken()
        response = call(runtime, "remote_view", {"path": "/x"})
        assert response["error"]["code"] == -32603
        assert "kaboom" in response["error"]["message"]

    def test_local_client_error_propagates(self, runtime):
        class NoClient:
            def run_command(self, *args):
                raise LocalClientError("gh not installed")

        runtime.executor = NoClient()
        with pytest.raises(LocalClientError):
            call(runtime, "remote_bash", {"command": "ls"})


class TestServeLoop:
    def test_skips_garbage_and_answers_requests(self, runtime):
        stdin = io.StringIO(
            "\n".join([
                "not json",
                json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
                json.dumps({"jsonrpc": "2.0", "id": 1, "method": "ping"}),
                "",
                json.dumps({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}),
            ])
            + "\n"
        )
        stdout = io.StringIO()
        serve(runtime, stdin, stdout)
        responses = [json.loads(line) for line in stdout.getvalue().splitlines()]
        assert [response["id"] for response in responses] == [1, 2]
        assert len(responses[1]["result"]["tools"]) == len(TOOLS)
