import os
import stat
import time
import shlex
import select
import socket
import threading
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import paramiko

from codespace_mcp.config import BUFFER_SIZE, CONNECT_TIMEOUT, CONTROL_PERSIST, KEEPALIVE_INTERVAL
from codespace_mcp.errors import LocalClientError, RemoteTimeout, TransportError
from codespace_mcp.utils import iso_now, json_line, log_error, log_warning, safe_name


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int


def parse_host_alias(profile: str) -> str:
    for line in profile.splitlines():
        line = line.strip()
        if line.lower().startswith("host "):
            return line[5:].strip().split()[0]
    return ""


def with_multiplexing(profile: str, control_path: str) -> str:
    lowered = profile.lower()
    if not profile.endswith("\n"):
        profile += "\n"
    if "controlmaster" not in lowered:
        profile += "\tControlMaster auto\n"
    if "controlpath" not in lowered:
        profile += f"\tControlPath {control_path}\n"
    if "controlpersist" not in lowered:
        profile += f"\tControlPersist {CONTROL_PERSIST}\n"
    return profile


def relay_command(remote_path: str) -> str:
    socat_address = shlex.quote(f"UNIX-CONNECT:{remote_path}")
    return (
        "if command -v socat >/dev/null 2>&1; "
        f"then exec socat - {socat_address}; "
        f"else exec nc -U {shlex.quote(remote_path)}; fi"
    )


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


class Connection:
    """
    One multiplexed SSH connection per target.

    The paramiko transport carries every round trip as its own channel. When it
    cannot be set up the connection degrades to spawning the discovery
    collaborator's client once per call.
    """

    def __init__(
        self,
        target: str,
        discovery,
        state_dirs: Dict[str, str],
        connect_timeout: float = CONNECT_TIMEOUT,
        verify_host_key: bool = True,
    ):
        self.target = target
        self.discovery = discovery
        self.connect_timeout = connect_timeout
        self.verify_host_key = verify_host_key

        name = safe_name(target)
        self.profile_path = os.path.join(state_dirs["profiles_dir"], f".ssh-config-{name}")
        self.control_path = os.path.join(state_dirs["state_root"], f".ssh-{name}")
        self.log_path = os.path.join(state_dirs["logs_dir"], f"{name}.log")
        self.host_alias = ""

        self.client: Optional[paramiko.SSHClient] = None
        self.forwards: List["SocketForward"] = []
        self.lock = threading.Lock()

    def _log(self, direction: str, payload: Dict[str, Any]) -> None:
        data = {"ts": iso_now(), "dir": direction, "target": self.target}
        data.update(payload)
        json_line(self.log_path, data)

    @property
    def established(self) -> bool:
        if self.client is None:
            return False
        transport = self.client.get_transport()
        return bool(transport and transport.is_active())

    def establish(self) -> bool:
        try:
            profile = self.discovery.get_connection_profile(self.target)
            self.host_alias = parse_host_alias(profile)
            if not self.host_alias:
                raise TransportError("could not parse Host from SSH profile")
            profile = with_multiplexing(profile, self.control_path)
            self._write_profile(profile)
            self.client = self._open_client(profile)
        except Exception as exc:
            self._drop_client(f"establish failed: {exc}")
            log_warning(f"SSH multiplexing failed for {self.target}, using per-call fallback: {exc}")
            self._log("SYS", {"event": "multiplex_failed", "error": str(exc)})
            return False

        log_error(f"SSH multiplexing established for {self.target} ({self.host_alias})")
        self._log("SYS", {"event": "multiplex_established", "host": self.host_alias, "profile": self.profile_path})
        return True

    def _write_profile(self, profile: str) -> None:
        fd = os.open(self.profile_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(profile)
        os.chmod(self.profile_path, 0o600)

    def _open_client(self, profile: str) -> paramiko.SSHClient:
        options = paramiko.SSHConfig.from_text(profile).lookup(self.host_alias)

        client = paramiko.SSHClient()
        if not self.verify_host_key or options.get("stricthostkeychecking", "").lower() == "no":
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.load_system_host_keys()
            for known_hosts in options.get("userknownhostsfile", "").split():
                known_hosts = os.path.expanduser(known_hosts)
                if os.path.isfile(known_hosts):
                    client.load_host_keys(known_hosts)

        connect_kwargs: Dict[str, Any] = {
            "hostname": options.get("hostname", self.host_alias),
            "port": int(options.get("port", 22)),
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if options.get("user"):
            connect_kwargs["username"] = options["user"]
        if options.get("identityfile"):
            connect_kwargs["key_filename"] = [os.path.expanduser(path) for path in options["identityfile"]]
        proxy_command = options.get("proxycommand", "")
        if proxy_command and proxy_command.lower() != "none":
            connect_kwargs["sock"] = paramiko.ProxyCommand(proxy_command)

        try:
            client.connect(**connect_kwargs)
        except Exception:
            client.close()
            raise

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        return client

    def _drop_client(self, reason: str) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        self._log("SYS", {"event": "client_dropped", "reason": reason})
        try:
            client.close()
        except Exception:
            pass

    def execute(
        self,
        command: str,
        input_data: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        # One round trip in flight per connection keeps stdout/stderr attribution intact
        with self.lock:
            started = time.time()
            if self.client is not None:
                mode = "multiplexed"
                result = self._execute_multiplexed(command, input_data, timeout)
            else:
                mode = "fallback"
                result = self._execute_fallback(command, input_data, timeout)
            self._log(
                "EXEC",
                {
                    "mode": mode,
                    "command": command[:500],
                    "stdin_bytes": len(input_data) if input_data is not None else 0,
                    "exit_code": result.exit_code,
                    "seconds": round(time.time() - started, 3),
                },
            )
            return result

    def _execute_multiplexed(
        self,
        command: str,
        input_data: Optional[bytes],
        timeout: Optional[float],
    ) -> CommandResult:
        transport = self.client.get_transport() if self.client else None
        if transport is None or not transport.is_active():
            self._drop_client("transport disconnected")
            raise TransportError(f"connection to {self.target} lost; retry the operation")

        try:
            channel = transport.open_session(timeout=self.connect_timeout)
            channel.exec_command(command)
            if input_data is not None:
                channel.sendall(input_data)
            channel.shutdown_write()
        except (paramiko.SSHException, EOFError, OSError) as exc:
            self._drop_client(f"channel open failed: {exc}")
            raise TransportError(f"connection to {self.target} lost ({exc}); retry the operation")

        return self._collect(channel, transport, timeout)

    def _collect(self, channel, transport, timeout: Optional[float]) -> CommandResult:
        deadline = (time.time() + timeout) if timeout else None
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []

        try:
            while True:
                has_progress = False
                if channel.recv_ready():
                    data = channel.recv(BUFFER_SIZE)
                    if data:
                        stdout_chunks.append(data)
                        has_progress = True
                if channel.recv_stderr_ready():
                    data = channel.recv_stderr(BUFFER_SIZE)
                    if data:
                        stderr_chunks.append(data)
                        has_progress = True

                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break

                if not transport.is_active():
                    self._drop_client("transport disconnected during command")
                    raise TransportError(f"connection to {self.target} lost mid-command; retry the operation")

                if deadline is not None and time.time() >= deadline:
                    raise RemoteTimeout(
                        f"command exceeded {timeout:g}s deadline; it may still be running remotely"
                    )

                if not has_progress:
                    time.sleep(0.01)

            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, EOFError, OSError) as exc:
            self._drop_client(f"channel failed: {exc}")
            raise TransportError(f"connection to {self.target} lost ({exc}); retry the operation")
        finally:
            try:
                channel.close()
            except Exception:
                pass

        return CommandResult(_decode(stdout_chunks), _decode(stderr_chunks), exit_code)

    def _execute_fallback(
        self,
        command: str,
        input_data: Optional[bytes],
        timeout: Optional[float],
    ) -> CommandResult:
        argv = self.discovery.fallback_argv(self.target) + [command]
        try:
            completed = subprocess.run(argv, input=input_data, capture_output=True, timeout=timeout)
        except OSError as exc:
            raise LocalClientError(f"cannot spawn remote shell client {argv[0]!r}: {exc}")
        except subprocess.TimeoutExpired:
            raise RemoteTimeout(f"command exceeded {timeout:g}s deadline; it may still be running remotely")
        return CommandResult(_decode([completed.stdout]), _decode([completed.stderr]), completed.returncode)

    def invocation_argv(self) -> List[str]:
        """argv prefix an external process can append one remote command to."""
        if self.established:
            return ["ssh", "-F", self.profile_path, "-o", "BatchMode=yes", self.host_alias]
        return self.discovery.fallback_argv(self.target)

    def forward_socket(self, local_path: str, remote_path: str) -> "SocketForward":
        if not self.established:
            raise TransportError("SSH multiplexing not active, cannot forward socket")

        try:
            mode = os.lstat(local_path).st_mode
        except FileNotFoundError:
            mode = None
        if mode is not None:
            if not stat.S_ISSOCK(mode):
                raise TransportError(f"refusing to replace non-socket file {local_path}")
            os.unlink(local_path)

        forward = SocketForward(self.client.get_transport(), local_path, remote_path)
        forward.start()
        self.forwards.append(forward)
        self._log("SYS", {"event": "socket_forwarded", "local": local_path, "remote": remote_path})
        return forward

    def close(self) -> None:
        for forward in self.forwards:
            forward.close()
        self.forwards = []
        self._drop_client("closed")


class SocketForward:
    """Local unix socket whose clients are tunnelled to a remote unix socket."""

    def __init__(self, transport, local_path: str, remote_path: str):
        self.transport = transport
        self.local_path = local_path
        self.remote_path = remote_path
        self.stopped = threading.Event()
        self.server: Optional[socket.socket] = None
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(self.local_path)
        server.listen(8)
        server.settimeout(1.0)
        self.server = server
        self.thread = threading.Thread(target=self._accept_loop, daemon=True)
        self.thread.start()

    def _accept_loop(self) -> None:
        while not self.stopped.is_set():
            try:
                client_sock, _ = self.server.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            threading.Thread(target=self._pump, args=(client_sock,), daemon=True).start()

    def _pump(self, client_sock: socket.socket) -> None:
        channel = None
        try:
            channel = self.transport.open_session()
            channel.exec_command(relay_command(self.remote_path))
            # EOF on one side only closes that direction; the other keeps flowing
            sources = [client_sock, channel]
            while sources and not self.stopped.is_set():
                readable, _, _ = select.select(sources, [], [], 1.0)
                if client_sock in readable:
                    data = client_sock.recv(BUFFER_SIZE)
                    if data:
                        channel.sendall(data)
                    else:
                        channel.shutdown_write()
                        sources.remove(client_sock)
                if channel in readable:
                    data = channel.recv(BUFFER_SIZE)
                    if data:
                        client_sock.sendall(data)
                    else:
                        client_sock.shutdown(socket.SHUT_WR)
                        sources.remove(channel)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            log_error(f"socket forward {self.local_path} -> {self.remote_path} failed: {exc}")
        finally:
            if channel is not None:
                channel.close()
            client_sock.close()

    def close(self) -> None:
        self.stopped.set()
        if self.server is not None:
            self.server.close()
            self.server = None
        try:
            os.unlink(self.local_path)
        except FileNotFoundError:
            pass
