import os
from typing import Optional, Dict

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
CONTROL_PERSIST = 600  # seconds an idle OpenSSH master outlives its last client

SERVER_NAME = "codespace-mcp"
PROTOCOL_VERSION = "2024-11-05"

DEFAULT_WORKDIR = "/workspaces"
MISSING_PATH_EXIT = 44  # reserved exit code for "path does not exist"
MAX_RESULT_LINES = 200
NO_MATCHES = "No matches found."

# ========= Async sessions =========
SESSION_PREFIX = "codespace-mcp-"
SESSION_WIDTH = 200
SESSION_HEIGHT = 50
CAPTURE_LINES = 100
EXITED_MARKER = "[session exited]"
ASYNC_START_GRACE = 1.0
DEFAULT_READ_DELAY = 2.0
MAX_READ_DELAY = 60.0

# mise installs tmux under $HOME when the image lacks it
MISE_PATH = 'export PATH="$HOME/.local/bin:$HOME/.local/share/mise/shims:$PATH"'
TMUX_INSTALL_SCRIPT = (
    "(command -v mise >/dev/null 2>&1 || curl -fsSL https://mise.jdx.dev/install.sh | sh)"
    " && mise use -g tmux"
)

# ========= Forwarding =========
REMOTE_HELPER_DIR = "/tmp/codespace-mcp-bin"
REMOTE_HELPER_PATH = f"{REMOTE_HELPER_DIR}/codespace-mcp-exec"
MCP_CONFIG_PATHS = (
    ".copilot/mcp-config.json",
    ".vscode/mcp.json",
    ".mcp.json",
    ".github/mcp.json",
)
HOOKS_DIR = ".github/hooks"
FILE_BOUNDARY = "===FILE_BOUNDARY==="


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.CODESPACE_NAME: Optional[str] = None
        self.WORKDIR: Optional[str] = None  # detected on the target when unset
        self.STATE_DIR: Optional[str] = None
        self.HELPER_PATH: str = REMOTE_HELPER_PATH
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.STATE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.CODESPACE_NAME = os.environ.get("CODESPACE_NAME", self.CODESPACE_NAME)
        self.WORKDIR = os.environ.get("CODESPACE_WORKDIR") or self.WORKDIR
        self.STATE_DIR = os.environ.get("CODESPACE_MCP_STATE_DIR", self.STATE_DIR)
        self.HELPER_PATH = os.environ.get("CODESPACE_MCP_HELPER") or self.HELPER_PATH
        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PORT = int(os.environ.get("SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

    @property
    def target(self) -> Optional[str]:
        return self.CODESPACE_NAME or self.SSH_HOST

# Global instance
config = ServerConfig()
