import base64
import posixpath
import shlex
from pathlib import Path
from typing import Optional

from codespace_mcp import helper
from codespace_mcp.config import REMOTE_HELPER_PATH
from codespace_mcp.errors import RemoteError, UnsupportedEnvironment
from codespace_mcp.utils import log_error, log_warning, sha256_hex

SHEBANG = b"#!/usr/bin/env python3\n"


def helper_payload() -> bytes:
    return SHEBANG + Path(helper.__file__).read_bytes()


def deploy_helper(connection, remote_path: str = REMOTE_HELPER_PATH) -> str:
    """Upload the exec helper unless an identical copy is already in place."""
    payload = helper_payload()
    digest = sha256_hex(payload)
    quoted = shlex.quote(remote_path)

    probe = connection.execute(
        "command -v python3 >/dev/null 2>&1 || exit 3\n"
        f"[ -f {quoted} ] && sha256sum {quoted} | cut -d' ' -f1"
    )
    if probe.exit_code == 3:
        raise UnsupportedEnvironment("python3 not found on target, structured exec unavailable")
    if probe.stdout.strip() == digest:
        log_error(f"exec helper up to date at {remote_path}")
        return remote_path

    directory = shlex.quote(posixpath.dirname(remote_path) or "/")
    upload = connection.execute(
        f"mkdir -p {directory} && base64 -d > {quoted} && chmod +x {quoted}",
        input_data=base64.b64encode(payload),
    )
    if upload.exit_code != 0:
        raise UnsupportedEnvironment(f"uploading exec helper failed (exit {upload.exit_code}): {upload.stderr.strip()}")
    log_error(f"exec helper deployed to {remote_path}")
    return remote_path


def try_deploy_helper(connection, remote_path: str = REMOTE_HELPER_PATH) -> Optional[str]:
    try:
        return deploy_helper(connection, remote_path)
    except RemoteError as exc:
        log_warning(f"{exc.message}; falling back to shell assembly")
        return None
