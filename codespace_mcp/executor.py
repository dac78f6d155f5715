import base64
import binascii
import posixpath
import shlex
from typing import Dict, List, Optional

from codespace_mcp.config import DEFAULT_WORKDIR, MAX_RESULT_LINES, MISSING_PATH_EXIT, NO_MATCHES
from codespace_mcp.connection import CommandResult
from codespace_mcp.errors import AmbiguousMatch, MalformedRequest, NotFound, RemoteCommandError
from codespace_mcp.utils import is_env_name

DIR_MARKER = "__CODESPACE_MCP_DIR__"


def _check(result: CommandResult, action: str, path: str) -> CommandResult:
    if result.exit_code == MISSING_PATH_EXIT:
        raise NotFound(f"{action}: path not found: {path}")
    if result.exit_code != 0:
        raise RemoteCommandError(
            f"{action} failed (exit {result.exit_code}): {result.stderr.strip()}",
            result,
        )
    return result


def _decode_payload(encoded: str, action: str) -> bytes:
    try:
        return base64.b64decode("".join(encoded.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise RemoteCommandError(f"{action}: failed to decode base64 payload: {exc}")


def _number_lines(text: str, start: int = 1, end: int = -1) -> str:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    stop = len(lines) if end == -1 else min(end, len(lines))
    numbered = [f"{number}. {lines[number - 1]}" for number in range(start, stop + 1)]
    return "\n".join(numbered) + "\n" if numbered else ""


def _find_name(pattern: str) -> str:
    # find -name only understands the last path segment of a glob
    return pattern.rstrip("/").split("/")[-1] or "*"


class Executor:
    """File and command operations against one remote target."""

    def __init__(self, connection, workdir: str = DEFAULT_WORKDIR):
        self.connection = connection
        self.workdir = workdir

    def view_file(self, path: str, view_range: Optional[List[int]] = None) -> str:
        start, end = 1, -1
        if view_range is not None:
            if len(view_range) != 2:
                raise MalformedRequest("view_range must be [start_line, end_line]")
            start, end = int(view_range[0]), int(view_range[1])
            if start < 1:
                raise MalformedRequest("view_range start must be >= 1")
            if end != -1 and end < start:
                raise MalformedRequest("view_range end must be -1 or >= start")

        quoted = shlex.quote(path)
        script = "\n".join([
            f"if [ -d {quoted} ]; then echo {DIR_MARKER}; ls -1Ap -- {quoted}; exit 0; fi",
            f"[ -e {quoted} ] || exit {MISSING_PATH_EXIT}",
            f"base64 < {quoted}",
        ])
        result = _check(self.connection.execute(script), "view", path)

        if result.stdout.startswith(DIR_MARKER):
            return result.stdout[len(DIR_MARKER):].lstrip("\n")

        payload = _decode_payload(result.stdout, "view")
        return _number_lines(payload.decode("utf-8", errors="replace"), start, end)

    def read_bytes(self, path: str) -> bytes:
        quoted = shlex.quote(path)
        script = f"[ -f {quoted} ] || exit {MISSING_PATH_EXIT}\nbase64 < {quoted}"
        result = _check(self.connection.execute(script), "read", path)
        return _decode_payload(result.stdout, "read")

    def write_bytes(self, path: str, payload: bytes, make_parents: bool = False) -> None:
        command = f"base64 -d > {shlex.quote(path)}"
        if make_parents:
            parent = posixpath.dirname(path) or "."
            command = f"mkdir -p -- {shlex.quote(parent)} && {command}"
        result = self.connection.execute(command, input_data=base64.b64encode(payload))
        _check(result, "write", path)

    def edit_file(self, path: str, old: str, new: str) -> None:
        if not old:
            raise MalformedRequest("old_str must not be empty")

        # surrogateescape keeps non-UTF-8 bytes intact across the rewrite
        content = self.read_bytes(path).decode("utf-8", errors="surrogateescape")
        count = content.count(old)
        if count == 0:
            raise NotFound(f"old_str not found in {path}")
        if count > 1:
            raise AmbiguousMatch(f"old_str found {count} times in {path}, must be unique")

        updated = content.replace(old, new, 1)
        self.write_bytes(path, updated.encode("utf-8", errors="surrogateescape"))

    def create_file(self, path: str, content: str) -> None:
        self.write_bytes(path, content.encode("utf-8"), make_parents=True)

    def command_script(
        self,
        command: str,
        workdir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> str:
        lines = [f"cd {shlex.quote(workdir or self.workdir)} || exit $?"]
        for key, value in (env or {}).items():
            if not is_env_name(key):
                raise MalformedRequest(f"invalid environment variable name: {key!r}")
            lines.append(f"export {key}={shlex.quote(str(value))}")
        lines.append(command)
        return "\n".join(lines)

    def run_command(
        self,
        command: str,
        workdir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        script = self.command_script(command, workdir, env)
        return self.connection.execute(script, timeout=timeout)

    def search(self, pattern: str, path: Optional[str] = None, glob: Optional[str] = None) -> str:
        target = path or self.workdir
        quoted = shlex.quote(target)
        rg = ["rg", "--color=never", "--no-messages", "-n", "-H", "--no-heading"]
        grep = ["grep", "-rnHs"]
        if glob:
            rg += ["--glob", shlex.quote(glob)]
            grep += [f"--include={shlex.quote(glob)}"]
        tail = f"-e {shlex.quote(pattern)} -- {quoted}"

        script = "\n".join([
            f"cd {shlex.quote(self.workdir)} 2>/dev/null",
            f"[ -e {quoted} ] || exit {MISSING_PATH_EXIT}",
            "if command -v rg >/dev/null 2>&1; "
            f"then {' '.join(rg)} {tail}; "
            f"else {' '.join(grep)} {tail}; fi | head -n {MAX_RESULT_LINES}",
        ])
        result = self.connection.execute(script)
        if result.exit_code == MISSING_PATH_EXIT:
            raise NotFound(f"search: path not found: {target}")
        if not result.stdout.strip():
            if result.stderr.strip():
                raise RemoteCommandError(f"search failed: {result.stderr.strip()}", result)
            return NO_MATCHES
        return result.stdout

    def find_files(self, pattern: str, path: Optional[str] = None) -> str:
        target = path or self.workdir
        quoted = shlex.quote(target)

        fd_args = ["--type", "f", "--glob", "--exclude", ".git"]
        fd_pattern = pattern
        if "/" in pattern:
            fd_args.append("--full-path")
            if not pattern.startswith(("/", "**")):
                fd_pattern = f"**/{pattern}"
        fd_tail = f"{' '.join(fd_args)} {shlex.quote(fd_pattern)}"

        script = "\n".join([
            f"cd {shlex.quote(self.workdir)} 2>/dev/null",
            f"[ -d {quoted} ] || exit {MISSING_PATH_EXIT}",
            f"cd {quoted} || exit $?",
            "if command -v fd >/dev/null 2>&1; "
            f"then fd {fd_tail}; "
            "elif command -v fdfind >/dev/null 2>&1; "
            f"then fdfind {fd_tail}; "
            f"else find . -type f -name {shlex.quote(_find_name(pattern))} -not -path '*/.git/*' 2>/dev/null; "
            f"fi | head -n {MAX_RESULT_LINES}",
        ])
        result = self.connection.execute(script)
        if result.exit_code == MISSING_PATH_EXIT:
            raise NotFound(f"glob: path not found: {target}")
        if not result.stdout.strip():
            if result.stderr.strip():
                raise RemoteCommandError(f"glob failed: {result.stderr.strip()}", result)
            return NO_MATCHES
        return result.stdout
