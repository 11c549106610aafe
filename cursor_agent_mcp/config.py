import os
from typing import Optional, Dict
from cursor_agent_mcp.utils import clamp_float, to_bool

# ========= Static config =========
AGENT_NAME = "cursor-agent"
SERVER_NAME = "cursor-agent-server"
SERVER_VERSION = "1.0.0"
PROTOCOL_VERSION = "2024-11-05"

DEFAULT_TIMEOUT_SECONDS = 7200.0
MIN_TIMEOUT_SECONDS = 0.1
MAX_TIMEOUT_SECONDS = 7 * 24 * 3600.0

OUTPUT_PREVIEW_CHARS = 500
RESULT_POLL_INTERVAL = 1.0
KILL_GRACE_SECONDS = 5.0
OUTPUT_DRAIN_SECONDS = 2.0
BUFFER_SIZE = 4096

DEFAULT_MODEL = "auto"

# ========= Query statuses =========
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_TIMEOUT = "timeout"


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.AGENT_PATH: Optional[str] = None
        self.MODEL: str = DEFAULT_MODEL
        self.FORCE: bool = True
        self.DEFAULT_TIMEOUT: float = DEFAULT_TIMEOUT_SECONDS
        self.QUERY_LOGS: bool = True
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.AGENT_PATH = os.environ.get("CURSOR_AGENT_PATH", self.AGENT_PATH) or None
        self.MODEL = os.environ.get("CURSOR_AGENT_MODEL", self.MODEL) or DEFAULT_MODEL

        self.FORCE = to_bool(os.environ.get("CURSOR_AGENT_FORCE"), default=self.FORCE)
        self.DEFAULT_TIMEOUT = clamp_float(
            os.environ.get("CURSOR_AGENT_TIMEOUT", self.DEFAULT_TIMEOUT),
            self.DEFAULT_TIMEOUT, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS,
        )

# Global instance
config = ServerConfig()
