import os
import re
from typing import List, Optional

from couchlink.errors import ConfigError

# ========= Static config =========
CONNECT_TIMEOUT = 10
AUTH_TIMEOUT = 15
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
READER_POLL_INTERVAL = 0.02
EXEC_TIMEOUT = 30.0

TERMINAL_TYPE = "xterm-256color"
TERMINAL_WIDTH = 140
TERMINAL_HEIGHT = 40

DEFAULT_BUILD_LOG_PATH = "/tmp/xcodebuild.log"
DEFAULT_BUILD_SCRIPT_PATH = "/tmp/build_couchlink.sh"
DEFAULT_ERROR_DEBOUNCE = 2.0
DEFAULT_FAILURE_SIGNATURES = (
    "BUILD FAILED",
    "error:",
    "** BUILD FAILED **",
    "The following build commands failed:",
)
SUCCESS_SIGNATURE = "BUILD SUCCEEDED"

EXTRACT_ERROR_LINES = 50
EXTRACT_SUMMARY_LINES = 20
COPY_ERROR_LINES = 100
COPY_SUMMARY_LINES = 30

ERROR_TEXT_UNAVAILABLE = "Build error details not available"
COPY_FALLBACK_TEXT = "Failed to read build errors. Check terminal output or {log_path}"

MAX_TEXT_BUFFER_CHARS = 200_000

# ========= Terminal control sequences =========
CURSOR_POSITION_QUERY = b"\x1b[6n"
ANSI_CSI = re.compile(r"\x1B\[[0-9;?]*[ -/]*[@-~]")
ANSI_OSC = re.compile(r"\x1B\][^\x07]*\x07")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def cursor_position_report(width: int = TERMINAL_WIDTH, height: int = TERMINAL_HEIGHT) -> bytes:
    return f"\x1b[{height};{width}R".encode("ascii")


def _env(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    trimmed = raw.strip()
    return trimmed or None


def parse_signatures(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    parts = re.split(r"[,\n]", raw)
    return [part.strip() for part in parts if part.strip()]


def ensure_trailing_newline(key: str) -> str:
    return key if key.endswith("\n") else key + "\n"


# ========= Runtime Configuration =========
class AppConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_USERNAME: Optional[str] = None
        self.SSH_PRIVATE_KEY: Optional[str] = None
        self.SSH_PRIVATE_KEY_PATH: Optional[str] = None
        self.SSH_PRIVATE_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.PROJECTS_BASE_PATH: str = ""
        self.DEFAULT_AGENT: str = "codex"
        self.DEVICE_UDID: str = ""
        self.DEVELOPMENT_TEAM: str = ""
        self.GIT_ONE_LINER: str = "git add -A && git commit -m 'sync' && git push"
        self.KEYCHAIN_PASSWORD: str = ""
        self.BUILD_LOG_PATH: str = DEFAULT_BUILD_LOG_PATH
        self.BUILD_ERROR_DEBOUNCE: float = DEFAULT_ERROR_DEBOUNCE
        self.FAILURE_SIGNATURES: List[str] = list(DEFAULT_FAILURE_SIGNATURES)
        self.CACHE_DIR: Optional[str] = None

    def load_from_env(self) -> "AppConfig":
        self.SSH_HOST = _env("SSH_HOST") or self.SSH_HOST
        port = _env("SSH_PORT")
        if port is not None:
            try:
                self.SSH_PORT = int(port)
            except ValueError:
                raise ConfigError(f"SSH_PORT must be an integer, got '{port}'")
        self.SSH_USERNAME = _env("SSH_USERNAME") or self.SSH_USERNAME
        self.SSH_PRIVATE_KEY = _env("SSH_PRIVATE_KEY") or self.SSH_PRIVATE_KEY
        self.SSH_PRIVATE_KEY_PATH = _env("SSH_PRIVATE_KEY_PATH") or self.SSH_PRIVATE_KEY_PATH
        self.SSH_PRIVATE_KEY_PASSPHRASE = _env("SSH_PRIVATE_KEY_PASSPHRASE") or self.SSH_PRIVATE_KEY_PASSPHRASE
        verify_host_env = _env("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")
        self.PROJECTS_BASE_PATH = _env("PROJECTS_BASE_PATH") or self.PROJECTS_BASE_PATH
        self.DEFAULT_AGENT = (_env("DEFAULT_AGENT") or self.DEFAULT_AGENT).lower()
        self.DEVICE_UDID = _env("DEVICE_UDID") or self.DEVICE_UDID
        self.DEVELOPMENT_TEAM = _env("DEVELOPMENT_TEAM") or self.DEVELOPMENT_TEAM
        self.GIT_ONE_LINER = _env("GIT_ONE_LINER") or self.GIT_ONE_LINER
        self.KEYCHAIN_PASSWORD = _env("KEYCHAIN_PASSWORD") or self.KEYCHAIN_PASSWORD
        self.BUILD_LOG_PATH = _env("BUILD_LOG_PATH") or self.BUILD_LOG_PATH

        debounce = _env("BUILD_ERROR_DEBOUNCE")
        if debounce is not None:
            try:
                self.BUILD_ERROR_DEBOUNCE = max(0.0, float(debounce))
            except ValueError:
                raise ConfigError(f"BUILD_ERROR_DEBOUNCE must be a number, got '{debounce}'")

        signatures = parse_signatures(_env("BUILD_FAILURE_SIGNATURES"))
        if signatures:
            self.FAILURE_SIGNATURES = signatures
        self.CACHE_DIR = _env("COUCHLINK_CACHE_DIR") or self.CACHE_DIR
        return self

    def validate(self) -> List[str]:
        problems = []
        if not self.SSH_HOST:
            problems.append("SSH host is required (via --host or SSH_HOST env)")
        if not self.SSH_USERNAME:
            problems.append("SSH user is required (via --user or SSH_USERNAME env)")
        if not self.SSH_PRIVATE_KEY and not self.SSH_PRIVATE_KEY_PATH:
            problems.append("SSH private key is required (SSH_PRIVATE_KEY or SSH_PRIVATE_KEY_PATH)")
        return problems

    def private_key_text(self) -> str:
        if self.SSH_PRIVATE_KEY:
            return ensure_trailing_newline(self.SSH_PRIVATE_KEY)
        if self.SSH_PRIVATE_KEY_PATH:
            path = os.path.expanduser(self.SSH_PRIVATE_KEY_PATH)
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    return ensure_trailing_newline(handle.read())
            except OSError as exc:
                raise ConfigError(f"failed to read SSH private key at {path}: {exc}") from exc
        raise ConfigError("missing SSH private key. Provide SSH_PRIVATE_KEY or SSH_PRIVATE_KEY_PATH")


# Global instance
config = AppConfig()
