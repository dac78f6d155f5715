import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from codespace_mcp.config import ASYNC_START_GRACE, DEFAULT_READ_DELAY, MAX_READ_DELAY
from codespace_mcp.errors import MalformedRequest
from codespace_mcp.utils import clamp_float


@dataclass
class Runtime:
    executor: Any
    sessions: Any
    sleep: Callable[[float], None] = time.sleep
    now_ms: Callable[[], int] = field(default=lambda: int(time.time() * 1000))


# ========= Argument helpers =========
def _require_str(args: Dict[str, Any], key: str, allow_empty: bool = False) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise MalformedRequest(f"missing or invalid required argument: {key} (string)")
    if not value and not allow_empty:
        raise MalformedRequest(f"argument {key} must not be empty")
    return value


def _optional_str(args: Dict[str, Any], key: str) -> Optional[str]:
    value = args.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise MalformedRequest(f"argument {key} must be a string")
    return value


def _optional_number(args: Dict[str, Any], key: str) -> Optional[float]:
    value = args.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedRequest(f"argument {key} must be a number")
    return float(value)


# ========= Request shapes =========
@dataclass
class ViewRequest:
    path: str
    view_range: Optional[List[int]] = None

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "ViewRequest":
        view_range = args.get("view_range")
        if view_range is not None:
            if (
                not isinstance(view_range, list)
                or len(view_range) != 2
                or not all(isinstance(n, int) and not isinstance(n, bool) for n in view_range)
            ):
                raise MalformedRequest("view_range must be an array of two integers [start_line, end_line]")
        return cls(_require_str(args, "path"), view_range)


@dataclass
class EditRequest:
    path: str
    old_str: str
    new_str: str

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "EditRequest":
        return cls(
            _require_str(args, "path"),
            _require_str(args, "old_str"),
            _require_str(args, "new_str", allow_empty=True),
        )


@dataclass
class CreateRequest:
    path: str
    file_text: str

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "CreateRequest":
        return cls(_require_str(args, "path"), _require_str(args, "file_text", allow_empty=True))


@dataclass
class BashRequest:
    command: str
    mode: str = "sync"
    shell_id: Optional[str] = None
    description: Optional[str] = None
    workdir: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "BashRequest":
        mode = _optional_str(args, "mode") or "sync"
        if mode not in ("sync", "async"):
            raise MalformedRequest(f"mode must be 'sync' or 'async', got {mode!r}")
        env = args.get("env") or {}
        if not isinstance(env, dict) or not all(isinstance(v, str) for v in env.values()):
            raise MalformedRequest("env must be an object of string values")
        timeout = _optional_number(args, "timeout")
        if timeout is not None and timeout <= 0:
            raise MalformedRequest("timeout must be positive")
        return cls(
            command=_require_str(args, "command"),
            mode=mode,
            shell_id=_optional_str(args, "shellId"),
            description=_optional_str(args, "description"),
            workdir=_optional_str(args, "workdir"),
            env=env,
            timeout=timeout,
        )


@dataclass
class SearchRequest:
    pattern: str
    path: Optional[str] = None
    glob: Optional[str] = None

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "SearchRequest":
        return cls(_require_str(args, "pattern"), _optional_str(args, "path"), _optional_str(args, "glob"))


@dataclass
class GlobRequest:
    pattern: str
    path: Optional[str] = None

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "GlobRequest":
        return cls(_require_str(args, "pattern"), _optional_str(args, "path"))


@dataclass
class SessionInputRequest:
    shell_id: str
    input: str = ""
    delay: float = DEFAULT_READ_DELAY

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "SessionInputRequest":
        text = args.get("input", "")
        if not isinstance(text, str):
            raise MalformedRequest("argument input must be a string")
        delay = _optional_number(args, "delay")
        return cls(
            _require_str(args, "shellId"),
            text,
            clamp_float(delay, DEFAULT_READ_DELAY, 0.0, MAX_READ_DELAY),
        )


@dataclass
class SessionRequest:
    shell_id: str

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "SessionRequest":
        return cls(_require_str(args, "shellId"))


@dataclass
class EmptyRequest:
    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "EmptyRequest":
        return cls()


# ========= Handlers =========
def view_handler(runtime: Runtime, request: ViewRequest) -> str:
    return runtime.executor.view_file(request.path, request.view_range)


def edit_handler(runtime: Runtime, request: EditRequest) -> str:
    runtime.executor.edit_file(request.path, request.old_str, request.new_str)
    return f"Successfully edited {request.path}"


def create_handler(runtime: Runtime, request: CreateRequest) -> str:
    runtime.executor.create_file(request.path, request.file_text)
    return f"Created {request.path}"


def format_command_result(result) -> str:
    text = result.stdout
    if result.stderr:
        if text:
            text += "\n"
        text += "STDERR:\n" + result.stderr
    if result.exit_code != 0:
        text += f"\n[exit code: {result.exit_code}]"
    return text


def bash_handler(runtime: Runtime, request: BashRequest) -> str:
    if request.mode == "async":
        shell_id = request.shell_id or f"sh-{runtime.now_ms()}"
        command = request.command
        if request.workdir or request.env:
            # sessions start in the workspace root; fold overrides into the command line
            command = runtime.executor.command_script(request.command, request.workdir, request.env)
        runtime.sessions.start(shell_id, command)
        runtime.sleep(ASYNC_START_GRACE)
        output = runtime.sessions.read(shell_id)
        return f"Started async session: {shell_id}\n\n{output}"

    result = runtime.executor.run_command(request.command, request.workdir, request.env, request.timeout)
    return format_command_result(result)


def grep_handler(runtime: Runtime, request: SearchRequest) -> str:
    return runtime.executor.search(request.pattern, request.path, request.glob)


def glob_handler(runtime: Runtime, request: GlobRequest) -> str:
    return runtime.executor.find_files(request.pattern, request.path)


def write_bash_handler(runtime: Runtime, request: SessionInputRequest) -> str:
    if request.input:
        runtime.sessions.write(request.shell_id, request.input)
    runtime.sleep(request.delay)
    return runtime.sessions.read(request.shell_id)


def read_bash_handler(runtime: Runtime, request: SessionInputRequest) -> str:
    runtime.sleep(request.delay)
    return runtime.sessions.read(request.shell_id)


def stop_bash_handler(runtime: Runtime, request: SessionRequest) -> str:
    runtime.sessions.stop(request.shell_id)
    return f"Session {request.shell_id} stopped."


def list_bash_handler(runtime: Runtime, request: EmptyRequest) -> str:
    infos = runtime.sessions.list()
    if not infos:
        return "No active sessions."
    return "\n".join(
        f"{info.session_id} created={info.created} activity={info.activity} state={info.state}"
        for info in infos
    )


# ========= Registry =========
@dataclass
class Tool:
    name: str
    description: str
    schema: Dict[str, Any]
    request: Any
    handler: Callable[[Runtime, Any], str]

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.schema}


def _schema(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


_shell_id = {"type": "string", "description": "The session ID returned by remote_bash in async mode"}
_delay = {"type": "number", "description": "Seconds to wait before reading output (default: 2, max: 60)"}

TOOLS: List[Tool] = [
    Tool(
        "remote_view",
        "View a file or directory on the remote codespace. Returns file contents with line numbers.",
        _schema(
            {
                "path": {"type": "string", "description": "Path to the file to view"},
                "view_range": {
                    "type": "array",
                    "description": "Optional [start_line, end_line] range. Use -1 for end_line to read to end of file.",
                    "items": {"type": "integer"},
                },
            },
            ["path"],
        ),
        ViewRequest,
        view_handler,
    ),
    Tool(
        "remote_edit",
        "Edit a file on the remote codespace by replacing exactly one occurrence of old_str with new_str.",
        _schema(
            {
                "path": {"type": "string", "description": "Path to the file to edit"},
                "old_str": {"type": "string", "description": "The exact string to find and replace (must match exactly once)"},
                "new_str": {"type": "string", "description": "The replacement string"},
            },
            ["path", "old_str", "new_str"],
        ),
        EditRequest,
        edit_handler,
    ),
    Tool(
        "remote_create",
        "Create or overwrite a file on the remote codespace. Parent directories are created as needed.",
        _schema(
            {
                "path": {"type": "string", "description": "Path of the file to create"},
                "file_text": {"type": "string", "description": "Content of the file"},
            },
            ["path", "file_text"],
        ),
        CreateRequest,
        create_handler,
    ),
    Tool(
        "remote_bash",
        (
            "Execute a bash command on the remote codespace. Use mode 'async' for long-running or "
            "interactive commands (returns a shellId for use with remote_write_bash/remote_read_bash)."
        ),
        _schema(
            {
                "command": {"type": "string", "description": "The bash command to execute"},
                "description": {"type": "string", "description": "A short description of what this command does"},
                "mode": {
                    "type": "string",
                    "description": "Execution mode: 'sync' (default) waits for completion, 'async' runs in background and returns a shellId",
                    "enum": ["sync", "async"],
                },
                "shellId": {"type": "string", "description": "Session identifier for async mode. Auto-generated if not provided."},
                "workdir": {"type": "string", "description": "Working directory (defaults to workspace root)"},
                "env": {"type": "object", "description": "Environment variables to export before running", "additionalProperties": {"type": "string"}},
                "timeout": {"type": "number", "description": "Sync mode only: seconds to wait before giving up"},
            },
            ["command"],
        ),
        BashRequest,
        bash_handler,
    ),
    Tool(
        "remote_grep",
        "Search for a pattern in files on the remote codespace using ripgrep (with grep fallback).",
        _schema(
            {
                "pattern": {"type": "string", "description": "The regex pattern to search for"},
                "path": {"type": "string", "description": "Directory or file to search in (defaults to workspace root)"},
                "glob": {"type": "string", "description": "Glob pattern to filter files (e.g., '*.go', '*.ts')"},
            },
            ["pattern"],
        ),
        SearchRequest,
        grep_handler,
    ),
    Tool(
        "remote_glob",
        "Find files matching a glob pattern on the remote codespace.",
        _schema(
            {
                "pattern": {"type": "string", "description": "The glob pattern to match files against (e.g., '*.go', '**/*.ts')"},
                "path": {"type": "string", "description": "Directory to search in (defaults to workspace root)"},
            },
            ["pattern"],
        ),
        GlobRequest,
        glob_handler,
    ),
    Tool(
        "remote_write_bash",
        (
            "Send input to an async bash session on the remote codespace. "
            "Supports special keys: {enter}, {up}, {down}, {left}, {right}, {backspace}."
        ),
        _schema(
            {
                "shellId": _shell_id,
                "input": {"type": "string", "description": "The input to send. Can include special keys like {enter}, {up}, {down}."},
                "delay": _delay,
            },
            ["shellId"],
        ),
        SessionInputRequest,
        write_bash_handler,
    ),
    Tool(
        "remote_read_bash",
        "Read output from an async bash session on the remote codespace.",
        _schema({"shellId": _shell_id, "delay": _delay}, ["shellId"]),
        SessionInputRequest,
        read_bash_handler,
    ),
    Tool(
        "remote_stop_bash",
        "Stop an async bash session on the remote codespace.",
        _schema({"shellId": {"type": "string", "description": "The session ID to stop"}}, ["shellId"]),
        SessionRequest,
        stop_bash_handler,
    ),
    Tool(
        "remote_list_bash",
        "List active async bash sessions on the remote codespace.",
        _schema({}, []),
        EmptyRequest,
        list_bash_handler,
    ),
]

TOOLS_BY_NAME: Dict[str, Tool] = {tool.name: tool for tool in TOOLS}
