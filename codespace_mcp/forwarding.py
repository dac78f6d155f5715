"""
Rewrite workspace automation so it runs on the remote target.

A server descriptor (`command`, `args`, `env`) or hook descriptor (`bash`,
`cwd`, `env`) written for local execution becomes a local argv that reaches
the target through the connection's invocation prefix. Two strategies:

- structured: the deployed helper receives workdir, env and argv as separate
  arguments, so nothing is assembled into a shell string remotely;
- shell: a `bash -c` script with every value quoted via `shlex.quote`.
"""

import copy
import posixpath
import shlex
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from codespace_mcp.config import SERVER_NAME
from codespace_mcp.discovery import AutomationDescriptor
from codespace_mcp.utils import is_env_name, log_warning

STRUCTURED = "structured"
SHELL = "shell"


@dataclass
class ForwardingRule:
    source: AutomationDescriptor
    rewritten: Dict[str, Any]
    strategy: str


class ForwardingRewriter:
    def __init__(self, connection, workdir: str, helper_path: Optional[str] = None):
        self.connection = connection
        self.workdir = workdir
        self.helper_path = helper_path

    @property
    def strategy(self) -> str:
        return STRUCTURED if self.helper_path else SHELL

    def remote_dir(self, cwd: Any = None) -> str:
        if not isinstance(cwd, str) or cwd in ("", "."):
            return self.workdir
        if cwd.startswith("/"):
            return cwd
        return posixpath.join(self.workdir, cwd)

    def _env_pairs(self, env: Any, label: str) -> Optional[List[Tuple[str, str]]]:
        if not isinstance(env, dict):
            return []
        pairs = []
        for key, value in env.items():
            if not is_env_name(key):
                log_warning(f"skipping {label}: invalid environment variable name {key!r}")
                return None
            if isinstance(value, str):
                pairs.append((key, value))
        return pairs

    def remote_argv(self, directory: str, env: List[Tuple[str, str]], command: List[str]) -> List[str]:
        if self.strategy == STRUCTURED:
            argv = [self.helper_path, "--workdir", directory]
            for key, value in env:
                argv += ["--env", f"{key}={value}"]
            return argv + ["--"] + command

        steps = [f"cd {shlex.quote(directory)}"]
        steps += [f"export {key}={shlex.quote(value)}" for key, value in env]
        steps.append(f"exec {shlex.join(command)}")
        return ["bash", "-c", " && ".join(steps)]

    def local_argv(self, remote_argv: List[str]) -> List[str]:
        # the remote side re-parses the command through a shell, so it travels as one argument
        return self.connection.invocation_argv() + [shlex.join(remote_argv)]

    def rewrite_server(self, name: str, server: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        command = server.get("command")
        if not isinstance(command, str) or not command:
            log_warning(f"skipping server {name}: no command")
            return None
        env = self._env_pairs(server.get("env"), f"server {name}")
        if env is None:
            return None
        args = [arg for arg in server.get("args") or [] if isinstance(arg, str)]

        argv = self.local_argv(self.remote_argv(self.workdir, env, [command] + args))
        rewritten: Dict[str, Any] = {"type": "local", "command": argv[0], "args": argv[1:]}
        if "tools" in server:
            rewritten["tools"] = server["tools"]
        return rewritten

    def rewrite_hook(self, handler: Dict[str, Any], label: str = "hook") -> Optional[Dict[str, Any]]:
        snippet = handler.get("bash")
        if not isinstance(snippet, str) or not snippet:
            return None
        env = self._env_pairs(handler.get("env"), label)
        if env is None:
            return None

        argv = self.local_argv(self.remote_argv(self.remote_dir(handler.get("cwd")), env, ["bash", "-c", snippet]))
        rewritten = {key: value for key, value in handler.items() if key not in ("cwd", "env")}
        rewritten["bash"] = shlex.join(argv)
        return rewritten

    def rewrite(self, descriptor: AutomationDescriptor) -> Optional[ForwardingRule]:
        if descriptor.kind == "server":
            rewritten = self.rewrite_server(descriptor.name, descriptor.spec)
        else:
            rewritten = self.rewrite_hook(descriptor.spec, f"{descriptor.name} hook in {descriptor.source}")
        if rewritten is None:
            return None
        return ForwardingRule(descriptor, rewritten, self.strategy)

    def rewrite_all(self, descriptors: List[AutomationDescriptor]) -> List[ForwardingRule]:
        rules = []
        for descriptor in descriptors:
            rule = self.rewrite(descriptor)
            if rule is not None:
                rules.append(rule)
        return rules

    def rewrite_hooks_document(self, document: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Rewrite every handler of a hooks file; None when nothing was forwarded."""
        hooks = document.get("hooks") if isinstance(document, dict) else None
        if not isinstance(hooks, dict):
            return None

        result = copy.deepcopy(document)
        modified = False
        for event, handlers in hooks.items():
            if not isinstance(handlers, list):
                continue
            rewritten_handlers = []
            for handler in handlers:
                if not isinstance(handler, dict) or not handler.get("bash"):
                    rewritten_handlers.append(handler)
                    continue
                rewritten = self.rewrite_hook(handler, f"{event} hook")
                # an unforwardable handler is dropped rather than left to run locally
                if rewritten is not None:
                    rewritten_handlers.append(rewritten)
                modified = True
            result["hooks"][event] = rewritten_handlers
        return result if modified else None

    def rewrite_hook_files(self, documents: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        rewritten = {}
        for rel_path, document in documents.items():
            result = self.rewrite_hooks_document(document)
            if result is not None:
                rewritten[rel_path] = result
        return rewritten


def build_mcp_config(
    self_command: List[str],
    server_env: Dict[str, str],
    rules: List[ForwardingRule],
) -> Dict[str, Any]:
    command = self_command[0]
    servers: Dict[str, Any] = {
        "codespace": {
            "type": "local",
            "command": command,
            "args": self_command[1:] + ["mcp"],
            "env": dict(server_env),
            "tools": ["*"],
        }
    }
    for rule in rules:
        if rule.source.kind != "server":
            continue
        if rule.source.name in servers:
            log_warning(f"skipping server {rule.source.name}: name reserved by {SERVER_NAME}")
            continue
        servers[rule.source.name] = rule.rewritten
    return {"mcpServers": servers}
