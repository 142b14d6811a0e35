import os
import re
from typing import Optional, Dict

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
SHELL_SETTLE_DELAY = 0.4
READER_IDLE_SLEEP = 0.05

DEFAULT_POLL_INTERVAL = 0.5
MIN_POLL_INTERVAL = 0.05
MAX_POLL_INTERVAL = 30.0
DEFAULT_ECHO_POLL_DELAY = 0.15
MAX_ECHO_POLL_DELAY = 5.0

DEFAULT_READ_MAX_LINES = 200
MAX_READ_MAX_LINES = 5000

DEFAULT_PROJECT_KEY = "default"
DEFAULT_AUTH_METHOD = "password"
AUTH_METHODS = ("password", "key", "agent")
DEFAULT_SSH_USER = "root"
DEFAULT_SSH_PORT = 22

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
# longest unterminated escape held back between reads
MAX_PARTIAL_ESCAPE = 32

# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = DEFAULT_SSH_PORT
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_AUTH_METHOD: str = DEFAULT_AUTH_METHOD
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.POLL_INTERVAL: float = DEFAULT_POLL_INTERVAL
        self.ECHO_POLL_DELAY: float = DEFAULT_ECHO_POLL_DELAY
        self.DEBUG: bool = False
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        from remote_terminal.utils import clamp_float, to_bool

        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = int(os.environ.get("SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SSH_AUTH_METHOD = os.environ.get("SSH_AUTH_METHOD", self.SSH_AUTH_METHOD).strip().lower()

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = to_bool(verify_host_env, self.SSH_VERIFY_HOST_KEY)

        self.POLL_INTERVAL = clamp_float(
            os.environ.get("TERMINAL_POLL_INTERVAL", self.POLL_INTERVAL),
            DEFAULT_POLL_INTERVAL, MIN_POLL_INTERVAL, MAX_POLL_INTERVAL,
        )
        self.ECHO_POLL_DELAY = clamp_float(
            os.environ.get("TERMINAL_ECHO_POLL_DELAY", self.ECHO_POLL_DELAY),
            DEFAULT_ECHO_POLL_DELAY, 0.0, MAX_ECHO_POLL_DELAY,
        )
        self.DEBUG = to_bool(os.environ.get("TERMINAL_DEBUG"), self.DEBUG)

# Global instance
config = ServerConfig()
