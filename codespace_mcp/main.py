import io
import os
import sys
import json
import shutil
import argparse
import threading
from typing import List, Optional

from codespace_mcp import helper
from codespace_mcp.config import DEFAULT_WORKDIR, config
from codespace_mcp.connection import Connection
from codespace_mcp.deploy import try_deploy_helper
from codespace_mcp.discovery import (
    CodespaceDiscovery, SSHHostDiscovery, descriptors_from_files, detect_workdir, hook_documents
)
from codespace_mcp.errors import LocalClientError, RemoteError
from codespace_mcp.executor import Executor
from codespace_mcp.forwarding import ForwardingRewriter, build_mcp_config
from codespace_mcp.server import handle_request
from codespace_mcp.sessions import SessionManager
from codespace_mcp.tools import Runtime
from codespace_mcp.utils import log_error, make_state_dirs, resolve_state_root


def _write_response(stream, response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        stream.write(json.dumps(response, ensure_ascii=False) + "\n")
        stream.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        # Fallback: escape all non-ASCII to guarantee safe output
        try:
            stream.write(json.dumps(response, ensure_ascii=True) + "\n")
            stream.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def serve(runtime: Runtime, stdin, stdout) -> None:
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            continue
        if not isinstance(request, dict):
            log_error("invalid request: expected a JSON object")
            continue
        try:
            response = handle_request(request, runtime)
        except LocalClientError:
            raise
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            # Send an error response back so the client doesn't hang
            response = {
                "jsonrpc": "2.0",
                "id": request.get("id"),
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            }
        if response is not None:
            _write_response(stdout, response)


def build_discovery(parser: argparse.ArgumentParser):
    if config.CODESPACE_NAME:
        return CodespaceDiscovery()
    if config.SSH_HOST:
        return SSHHostDiscovery(
            config.SSH_HOST,
            user=config.SSH_USER,
            port=config.SSH_PORT,
            key_path=config.SSH_KEY_PATH,
            verify_host_key=config.SSH_VERIFY_HOST_KEY,
        )
    parser.error("a target is required (via --codespace / CODESPACE_NAME or --host / SSH_HOST)")


def self_command() -> List[str]:
    installed = shutil.which("codespace-mcp")
    if installed:
        return [installed]
    return [sys.executable, "-m", "codespace_mcp"]


def server_env() -> dict:
    env = {"CODESPACE_WORKDIR": config.WORKDIR}
    if config.CODESPACE_NAME:
        env["CODESPACE_NAME"] = config.CODESPACE_NAME
    else:
        env.update({"SSH_HOST": config.SSH_HOST, "SSH_PORT": str(config.SSH_PORT)})
        if config.SSH_USER:
            env["SSH_USER"] = config.SSH_USER
        if config.SSH_KEY_PATH:
            env["SSH_KEY_PATH"] = config.SSH_KEY_PATH
        if not config.SSH_VERIFY_HOST_KEY:
            env["SSH_VERIFY_HOST_KEY"] = "false"
    return env


def resolve_workdir(connection) -> str:
    if not config.WORKDIR:
        config.WORKDIR = detect_workdir(connection)
        log_error(f"detected workdir {config.WORKDIR}")
    return config.WORKDIR


def run_mcp(connection: Connection) -> None:
    connection.establish()
    try:
        resolve_workdir(connection)
    except RemoteError as exc:
        log_error(f"workdir detection failed: {exc.message}")
        config.WORKDIR = DEFAULT_WORKDIR
    runtime = Runtime(
        executor=Executor(connection, config.WORKDIR),
        sessions=SessionManager(connection, config.WORKDIR),
    )
    # Force UTF-8 I/O regardless of the platform's default encoding
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    log_error(
        f"codespace MCP started for {config.target}. workdir={config.WORKDIR} "
        f"state={config.STATE_DIRS['state_root']} multiplexed={connection.established}"
    )
    try:
        serve(runtime, stdin, stdout)
    except LocalClientError as exc:
        log_error(f"fatal: {exc}")
        sys.exit(1)
    finally:
        log_error("shutting down...")
        connection.close()


def run_forward(connection: Connection, discovery, output_dir: Optional[str], use_helper: bool) -> int:
    if not discovery.is_reachable(config.target):
        log_error(f"target {config.target} is not reachable")
        return 1
    connection.establish()

    try:
        workdir = resolve_workdir(connection)
        helper_path = try_deploy_helper(connection, config.HELPER_PATH) if use_helper else None
        files = discovery.fetch_automation_files(connection, workdir)
    except RemoteError as exc:
        log_error(f"forward failed: {exc.message}")
        return 1

    rewriter = ForwardingRewriter(connection, workdir, helper_path)
    servers = [d for d in descriptors_from_files(files) if d.kind == "server"]
    rules = rewriter.rewrite_all(servers)
    hooks = rewriter.rewrite_hook_files(hook_documents(files))
    mcp_config = build_mcp_config(self_command(), server_env(), rules)
    log_error(
        f"forwarding {len(rules)} of {len(servers)} servers and {len(hooks)} hooks files ({rewriter.strategy})"
    )

    if not output_dir:
        print(json.dumps(mcp_config, indent=2))
        return 0

    os.makedirs(output_dir, exist_ok=True)
    with open(os.path.join(output_dir, "mcp-config.json"), "w", encoding="utf-8") as handle:
        json.dump(mcp_config, handle, indent=2)
    for rel_path, document in hooks.items():
        path = os.path.join(output_dir, rel_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2)
    log_error(f"wrote forwarded config to {output_dir}")
    return 0


def run_forward_socket(connection: Connection, local_path: str, remote_path: str) -> int:
    connection.establish()
    try:
        connection.forward_socket(local_path, remote_path)
    except RemoteError as exc:
        log_error(f"forward-socket failed: {exc.message}")
        connection.close()
        return 1

    log_error(f"forwarding {local_path} -> {config.target}:{remote_path} (Ctrl-C to stop)")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        connection.close()
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    # exec runs on the target with its own minimal grammar
    if argv[:1] == ["exec"]:
        sys.exit(helper.main(argv[1:]))

    # Pre-load from environment
    config.load_from_env()

    parser = argparse.ArgumentParser(
        description="MCP server and forwarding tools for working inside a codespace or SSH host"
    )
    parser.add_argument("--codespace", help="Codespace name (overrides CODESPACE_NAME env)")
    parser.add_argument("--host", help="SSH host (overrides SSH_HOST env)")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--workdir", help="Remote workspace root (overrides CODESPACE_WORKDIR env)")
    parser.add_argument("--state-dir", help="Local state root for profiles and logs")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("mcp", help="Serve the remote tools over stdio (default)")
    subparsers.add_parser("exec", help="Structured exec helper: [--workdir DIR] [--env K=V]... -- CMD [ARGS...]")
    forward = subparsers.add_parser("forward", help="Rewrite workspace MCP servers and hooks to run remotely")
    forward.add_argument("--output", help="Directory for mcp-config.json and hook files (default: print config)")
    forward.add_argument("--no-helper", action="store_true", help="Use shell assembly instead of the exec helper")
    forward_socket = subparsers.add_parser("forward-socket", help="Forward a local unix socket to a remote one")
    forward_socket.add_argument("local_path")
    forward_socket.add_argument("remote_path")

    args = parser.parse_args(argv)

    # Apply args over env vars
    if args.codespace: config.CODESPACE_NAME = args.codespace
    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.key: config.SSH_KEY_PATH = args.key
    if args.port: config.SSH_PORT = args.port
    if args.workdir: config.WORKDIR = args.workdir
    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False

    discovery = build_discovery(parser)
    config.STATE_DIRS = make_state_dirs(resolve_state_root(args.state_dir or config.STATE_DIR))
    connection = Connection(
        config.target,
        discovery,
        config.STATE_DIRS,
        verify_host_key=config.SSH_VERIFY_HOST_KEY,
    )

    if args.command == "forward":
        try:
            code = run_forward(connection, discovery, args.output, not args.no_helper)
        finally:
            connection.close()
        sys.exit(code)
    if args.command == "forward-socket":
        sys.exit(run_forward_socket(connection, args.local_path, args.remote_path))
    run_mcp(connection)


if __name__ == "__main__":
    main()
