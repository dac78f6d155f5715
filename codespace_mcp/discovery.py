"""
Boundary to the tooling that knows how to reach a target.

Discovery hands out an OpenSSH profile for the multiplexed path, a per-call
argv for the fallback path, and the automation descriptors (auxiliary MCP
servers and lifecycle hooks) that live in the remote workspace.
"""

import base64
import binascii
import json
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from codespace_mcp.config import (
    CONNECT_TIMEOUT, DEFAULT_WORKDIR, FILE_BOUNDARY, HOOKS_DIR, MCP_CONFIG_PATHS
)
from codespace_mcp.errors import RemoteCommandError, TransportError
from codespace_mcp.utils import log_warning


@dataclass
class AutomationDescriptor:
    kind: str  # "server" or "hook"
    name: str  # server name, or hook event name
    source: str  # workspace-relative file the descriptor came from
    spec: Dict[str, Any] = field(default_factory=dict)


class Discovery:
    def get_connection_profile(self, target: str) -> str:
        raise NotImplementedError

    def is_reachable(self, target: str) -> bool:
        raise NotImplementedError

    def fallback_argv(self, target: str) -> List[str]:
        raise NotImplementedError

    def fetch_automation_files(self, connection, workdir: str) -> Dict[str, bytes]:
        """Raw MCP config and hooks files under workdir, keyed by relative path."""
        result = connection.execute(_batch_fetch_script(workdir))
        if result.exit_code != 0:
            raise RemoteCommandError(
                f"fetching automation descriptors failed (exit {result.exit_code}): {result.stderr.strip()}",
                result,
            )
        return parse_batched_output(result.stdout)

    def list_automation_descriptors(self, connection, workdir: str) -> List[AutomationDescriptor]:
        return descriptors_from_files(self.fetch_automation_files(connection, workdir))


class CodespaceDiscovery(Discovery):
    """GitHub Codespaces through the `gh` CLI."""

    def __init__(self, gh_path: str = "gh"):
        self.gh_path = gh_path

    def get_connection_profile(self, target: str) -> str:
        argv = [self.gh_path, "codespace", "ssh", "--config", "-c", target]
        try:
            completed = subprocess.run(argv, capture_output=True, text=True, timeout=60)
        except FileNotFoundError as exc:
            raise TransportError(f"gh CLI not found: {exc}")
        except subprocess.TimeoutExpired:
            raise TransportError("timed out fetching SSH config from gh")
        if completed.returncode != 0:
            raise TransportError(f"getting SSH config: {completed.stderr.strip() or completed.returncode}")
        return completed.stdout

    def is_reachable(self, target: str) -> bool:
        argv = self.fallback_argv(target) + ["echo ready"]
        try:
            completed = subprocess.run(argv, capture_output=True, text=True, timeout=30)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return completed.returncode == 0 and "ready" in completed.stdout

    def fallback_argv(self, target: str) -> List[str]:
        return [self.gh_path, "codespace", "ssh", "-c", target, "--"]


class SSHHostDiscovery(Discovery):
    """A plain SSH host described by host/user/port/key settings."""

    def __init__(
        self,
        host: str,
        user: Optional[str] = None,
        port: int = 22,
        key_path: Optional[str] = None,
        verify_host_key: bool = True,
    ):
        self.host = host
        self.user = user
        self.port = port
        self.key_path = key_path
        self.verify_host_key = verify_host_key

    def get_connection_profile(self, target: str) -> str:
        lines = [f"Host {target}", f"\tHostName {self.host}", f"\tPort {self.port}"]
        if self.user:
            lines.append(f"\tUser {self.user}")
        if self.key_path:
            lines.append(f"\tIdentityFile {self.key_path}")
        if not self.verify_host_key:
            lines.append("\tStrictHostKeyChecking no")
            lines.append("\tUserKnownHostsFile /dev/null")
        return "\n".join(lines) + "\n"

    def is_reachable(self, target: str) -> bool:
        try:
            completed = subprocess.run(
                self.fallback_argv(target) + ["true"],
                capture_output=True,
                timeout=CONNECT_TIMEOUT * 3,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return completed.returncode == 0

    def fallback_argv(self, target: str) -> List[str]:
        argv = ["ssh", "-p", str(self.port), "-o", "BatchMode=yes", "-o", f"ConnectTimeout={CONNECT_TIMEOUT}"]
        if self.key_path:
            argv += ["-i", self.key_path]
        if not self.verify_host_key:
            argv += ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]
        argv.append(f"{self.user}@{self.host}" if self.user else self.host)
        return argv


def detect_workdir(connection) -> str:
    """The repository checkout under /workspaces, else /workspaces itself."""
    result = connection.execute(f"ls -d {DEFAULT_WORKDIR}/*/ 2>/dev/null | head -1")
    workdir = result.stdout.strip().rstrip("/") if result.exit_code == 0 else ""
    return workdir or DEFAULT_WORKDIR


def _batch_fetch_script(workdir: str) -> str:
    # Each file is emitted as: boundary, relative path, base64 body
    lines = [f"WD={shlex.quote(workdir)}", f"SEP={shlex.quote(FILE_BOUNDARY)}"]
    for rel in MCP_CONFIG_PATHS:
        quoted = shlex.quote(rel)
        lines.append(f'if [ -f "$WD"/{quoted} ]; then echo "$SEP"; echo {quoted}; base64 < "$WD"/{quoted}; fi')
    lines.append(f'for f in "$WD"/{HOOKS_DIR}/*.json; do')
    lines.append('  [ -f "$f" ] || continue')
    lines.append('  echo "$SEP"; echo "${f#$WD/}"; base64 < "$f"')
    lines.append("done")
    lines.append('echo "$SEP"')
    return "\n".join(lines)


def parse_batched_output(output: str) -> Dict[str, bytes]:
    files: Dict[str, bytes] = {}
    for part in output.split(FILE_BOUNDARY):
        part = part.strip()
        if not part:
            continue
        pieces = part.split("\n", 1)
        if len(pieces) < 2:
            continue
        rel_path = pieces[0].strip()
        encoded = "".join(pieces[1].split())
        if not rel_path or not encoded:
            continue
        try:
            files[rel_path] = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            log_warning(f"skipping {rel_path}: invalid base64 payload")
    return files


def descriptors_from_files(files: Dict[str, bytes]) -> List[AutomationDescriptor]:
    descriptors: List[AutomationDescriptor] = []
    seen_servers = set()

    for rel_path in MCP_CONFIG_PATHS:
        if rel_path not in files:
            continue
        document = _load_json(rel_path, files[rel_path])
        servers = document.get("mcpServers") if isinstance(document, dict) else None
        if not isinstance(servers, dict):
            continue
        for name, server in servers.items():
            # first config file to define a name wins
            if not isinstance(server, dict) or name in seen_servers:
                continue
            seen_servers.add(name)
            descriptors.append(AutomationDescriptor("server", name, rel_path, dict(server)))

    for rel_path, payload in files.items():
        if not (rel_path.startswith(HOOKS_DIR + "/") and rel_path.endswith(".json")):
            continue
        document = _load_json(rel_path, payload)
        hooks = document.get("hooks") if isinstance(document, dict) else None
        if not isinstance(hooks, dict):
            continue
        for event, handlers in hooks.items():
            if not isinstance(handlers, list):
                continue
            for handler in handlers:
                if isinstance(handler, dict) and isinstance(handler.get("bash"), str) and handler["bash"]:
                    descriptors.append(AutomationDescriptor("hook", event, rel_path, dict(handler)))
    return descriptors


def hook_documents(files: Dict[str, bytes]) -> Dict[str, Any]:
    """Parsed hooks files keyed by relative path."""
    documents: Dict[str, Any] = {}
    for rel_path, payload in files.items():
        if not (rel_path.startswith(HOOKS_DIR + "/") and rel_path.endswith(".json")):
            continue
        document = _load_json(rel_path, payload)
        if isinstance(document, dict):
            documents[rel_path] = document
    return documents


def _load_json(rel_path: str, payload: bytes) -> Any:
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        log_warning(f"skipping {rel_path}: {exc}")
        return None
