import os
import re
from typing import Optional

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
POLL_INTERVAL = 0.05

DEFAULT_COMMAND_TIMEOUT = 60.0
MAX_COMMAND_TIMEOUT = 3600.0
STREAM_CANCEL_GRACE = 0.5

TIMEOUT_EXIT_CODE = 124
INTERRUPT_EXIT_CODE = 130
ELEVATION_PROMPT = ""
ELEVATION_SHELL = "/bin/sh -s"

# ========= Context budget =========
DEFAULT_CONTEXT_TOKENS = 100_000
TOKENS_PER_CHAR = 0.25
DIALOGUE_FLOOR = 20
COMMAND_LOG_FLOOR = 1
DIALOGUE_SHARE = 1 / 3
LOG_DELIMITER = "\n\n---\n\n"
DIALOGUE_LOG_NAME = "communication.log"
COMMAND_LOG_NAME = "commands.log"

# ========= Planner =========
DEFAULT_PLANNER = "adminshell.planner:create_planner"
DEFAULT_MODEL = "claude-sonnet-4-5"
PLANNER_MAX_TOKENS = 4096

# ========= Streaming heuristics =========
# Long-running invocations that never exit on their own.
STREAMING_PATTERNS = [
    re.compile(r"\btail\b[^|;&]*\s(-[a-zA-Z]*[fF][a-zA-Z]*|--follow\b)"),
    re.compile(r"\bjournalctl\b[^|;&]*\s(-[a-zA-Z]*f[a-zA-Z]*|--follow\b)"),
    re.compile(r"\b(docker|podman|kubectl|oc)\b[^|;&]*\blogs\b[^|;&]*\s(-[a-zA-Z]*f[a-zA-Z]*|--follow\b)"),
    re.compile(r"\bdocker(-compose|\s+compose)\b[^|;&]*\blogs\b[^|;&]*\s(-[a-zA-Z]*f[a-zA-Z]*|--follow\b)"),
    re.compile(r"\bpm2\s+(logs|monit)\b"),
    re.compile(r"(^|[|;&]\s*|sudo\s+)(top|htop|atop|btop|iotop|iftop|nethogs|glances|nmon)\b"),
    re.compile(r"(^|[|;&]\s*|sudo\s+)(less|more|most)\b"),
    re.compile(r"(^|[|;&]\s*|sudo\s+)(tcpdump|tshark|ngrep)\b"),
    re.compile(r"(^|[|;&]\s*|sudo\s+)watch\b"),
    re.compile(r"\bdmesg\b[^|;&]*\s(-[a-zA-Z]*w[a-zA-Z]*|--follow\b)"),
]

# ========= Runtime Configuration =========
class AppConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.CONTEXT_TOKENS: int = DEFAULT_CONTEXT_TOKENS
        self.LOG_DIR: str = "./logs"
        self.PLANNER: Optional[str] = None
        self.MODEL: str = DEFAULT_MODEL

    def load_from_env(self):
        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = int(os.environ.get("SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.CONTEXT_TOKENS = int(os.environ.get("ADMINSHELL_CONTEXT_TOKENS", self.CONTEXT_TOKENS))
        self.LOG_DIR = os.environ.get("ADMINSHELL_LOG_DIR", self.LOG_DIR)
        self.PLANNER = os.environ.get("ADMINSHELL_PLANNER", self.PLANNER)
        self.MODEL = os.environ.get("ADMINSHELL_MODEL", self.MODEL)
        if not self.PLANNER and os.environ.get("ANTHROPIC_API_KEY"):
            self.PLANNER = DEFAULT_PLANNER

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

# Global instance
config = AppConfig()
