import re
import shlex
from dataclasses import dataclass
from typing import Dict, List, Tuple

from codespace_mcp.config import (
    CAPTURE_LINES, DEFAULT_WORKDIR, EXITED_MARKER, MISE_PATH, MISSING_PATH_EXIT,
    SESSION_HEIGHT, SESSION_PREFIX, SESSION_WIDTH, TMUX_INSTALL_SCRIPT
)
from codespace_mcp.errors import MalformedRequest, NotFound, RemoteCommandError, UnsupportedEnvironment
from codespace_mcp.utils import iso_now, log_error

_SESSION_ID = re.compile(r"^[A-Za-z0-9_-]+$")
_TOKEN = re.compile(r"\{([a-z]+)\}")
_PANE_MARKER = "__CODESPACE_MCP_PANE__"

SPECIAL_KEYS = {
    "enter": "Enter",
    "up": "Up",
    "down": "Down",
    "left": "Left",
    "right": "Right",
    "backspace": "BSpace",
}


@dataclass
class Segment:
    kind: str  # "literal" or "key"
    value: str


@dataclass
class SessionInfo:
    session_id: str
    created: str
    activity: str
    state: str = "running"

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.session_id,
            "created": self.created,
            "activity": self.activity,
            "state": self.state,
        }


def parse_input(text: str) -> List[Segment]:
    """Split agent input into literal text and named keys; unknown braces stay literal."""
    segments: List[Segment] = []
    literal = ""
    pos = 0
    for match in _TOKEN.finditer(text):
        key = SPECIAL_KEYS.get(match.group(1))
        if key is None:
            continue
        literal += text[pos:match.start()]
        if literal:
            segments.append(Segment("literal", literal))
            literal = ""
        segments.append(Segment("key", key))
        pos = match.end()
    literal += text[pos:]
    if literal:
        segments.append(Segment("literal", literal))
    return segments


def session_name(session_id: str) -> str:
    return SESSION_PREFIX + session_id


class SessionManager:
    """Long-lived remote shell sessions backed by tmux."""

    def __init__(self, connection, workdir: str = DEFAULT_WORKDIR):
        self.connection = connection
        self.workdir = workdir
        self.sessions: Dict[str, Dict[str, str]] = {}
        self.tmux_ready = False

    def _tmux(self, script: str):
        return self.connection.execute(f"{MISE_PATH}\n{script}")

    def _validate(self, session_id: str) -> str:
        if not isinstance(session_id, str) or not _SESSION_ID.match(session_id):
            raise MalformedRequest(f"invalid session id {session_id!r}: use letters, digits, '-' or '_'")
        return session_name(session_id)

    def ensure_tmux(self) -> None:
        if self.tmux_ready:
            return
        result = self._tmux("command -v tmux >/dev/null 2>&1")
        if result.exit_code != 0:
            log_error("tmux not found on target, installing via mise")
            install = self._tmux(f"{TMUX_INSTALL_SCRIPT} && command -v tmux >/dev/null 2>&1")
            if install.exit_code != 0:
                raise UnsupportedEnvironment(
                    f"tmux is not available and could not be installed: {install.stderr.strip()}"
                )
        self.tmux_ready = True

    def start(self, session_id: str, command: str) -> None:
        name = self._validate(session_id)
        if self.sessions.get(session_id, {}).get("state") == "running":
            raise MalformedRequest(f"session {session_id} is already running; stop it or pick another id")
        self.ensure_tmux()

        workdir = shlex.quote(self.workdir)
        pane = shlex.quote(f"={name}:")
        # remain-on-exit is set before the command runs so instant exits stay readable
        script = (
            f"tmux new-session -d -s {shlex.quote(name)} -x {SESSION_WIDTH} -y {SESSION_HEIGHT} -c {workdir}"
            f" \\; set-option -w -t {pane} remain-on-exit on"
            f" \\; respawn-pane -k -t {pane} -c {workdir} {shlex.quote(command)}"
        )
        result = self._tmux(script)
        if result.exit_code != 0:
            raise RemoteCommandError(
                f"start session failed (exit {result.exit_code}): {result.stderr.strip()}",
                result,
            )
        self.sessions[session_id] = {"state": "running", "created": iso_now()}

    def write(self, session_id: str, text: str) -> None:
        name = self._validate(session_id)
        target = shlex.quote(f"={name}:")
        for segment in parse_input(text):
            if segment.kind == "key":
                script = f"tmux send-keys -t {target} {segment.value}"
            else:
                script = f"tmux send-keys -t {target} -l -- {shlex.quote(segment.value)}"
            result = self._tmux(script)
            if result.exit_code != 0:
                self._raise_tmux_error("write to session", session_id, result)

    def read(self, session_id: str) -> str:
        name = self._validate(session_id)
        exact = shlex.quote(f"={name}")
        pane = shlex.quote(f"={name}:")
        script = "\n".join([
            f"tmux has-session -t {exact} 2>/dev/null || exit {MISSING_PATH_EXIT}",
            f"tmux capture-pane -t {pane} -p -S -{CAPTURE_LINES}",
            f"echo {_PANE_MARKER}",
            f"tmux display-message -p -t {pane} '#{{pane_dead}} #{{pane_dead_status}}'",
        ])
        result = self._tmux(script)
        if result.exit_code == MISSING_PATH_EXIT:
            self.sessions.pop(session_id, None)
            raise NotFound(f"session {session_id} not found")
        if result.exit_code != 0:
            self._raise_tmux_error("read session", session_id, result)

        output, dead = _split_capture(result.stdout)
        if dead:
            self.sessions.setdefault(session_id, {"created": ""})["state"] = "exited"
            output = f"{output}\n{EXITED_MARKER}" if output else EXITED_MARKER
        return output

    def stop(self, session_id: str) -> None:
        name = self._validate(session_id)
        result = self._tmux(f"tmux kill-session -t {shlex.quote('=' + name)}")
        if result.exit_code != 0:
            self._raise_tmux_error("stop session", session_id, result)
        if session_id in self.sessions:
            self.sessions[session_id]["state"] = "stopped"

    def list(self) -> List[SessionInfo]:
        fmt = shlex.quote("#{session_name} #{session_created} #{session_activity}")
        result = self._tmux(f"tmux list-sessions -F {fmt} 2>/dev/null || true")
        if result.exit_code != 0:
            raise RemoteCommandError(f"list sessions failed (exit {result.exit_code})", result)

        infos: List[SessionInfo] = []
        for line in result.stdout.splitlines():
            parts = line.strip().split()
            if len(parts) != 3 or not parts[0].startswith(SESSION_PREFIX):
                continue
            session_id = parts[0][len(SESSION_PREFIX):]
            state = self.sessions.get(session_id, {}).get("state", "running")
            infos.append(SessionInfo(session_id, parts[1], parts[2], state))

        live = {info.session_id for info in infos}
        for session_id in list(self.sessions):
            if session_id not in live:
                del self.sessions[session_id]
        return infos

    def _raise_tmux_error(self, action: str, session_id: str, result) -> None:
        stderr = result.stderr.strip()
        if "can't find" in stderr or "no server running" in stderr or "session not found" in stderr:
            self.sessions.pop(session_id, None)
            raise NotFound(f"session {session_id} not found")
        raise RemoteCommandError(f"{action} failed (exit {result.exit_code}): {stderr}", result)


def _split_capture(stdout: str) -> Tuple[str, bool]:
    body, _, status = stdout.partition(_PANE_MARKER)
    lines = body.split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    dead = status.split()[:1] == ["1"]
    return "\n".join(lines), dead
