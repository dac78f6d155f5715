import os
import re
import sys
import json
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional


def log_error(message: str) -> None:
    print(f"[CODESPACE-MCP] {message}", file=sys.stderr, flush=True)


def log_warning(message: str) -> None:
    log_error(f"warning: {message}")


def clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        numeric = float(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_state_dirs(state_root: str) -> Dict[str, str]:
    profiles_dir = os.path.join(state_root, "profiles")
    logs_dir = os.path.join(state_root, "logs")
    os.makedirs(profiles_dir, exist_ok=True)
    os.makedirs(logs_dir, exist_ok=True)
    return {
        "state_root": state_root,
        "profiles_dir": profiles_dir,
        "logs_dir": logs_dir,
    }


def resolve_state_root(state_dir_arg: Optional[str]) -> str:
    override = state_dir_arg or os.environ.get("CODESPACE_MCP_STATE_DIR")
    if override:
        return os.path.abspath(os.path.expanduser(override))
    cache_home = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return os.path.join(cache_home, "codespace-mcp")


_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_env_name(name: Any) -> bool:
    return isinstance(name, str) and bool(_ENV_NAME.match(name))
