from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


class OutputMode(str, Enum):
    RAW_PASSTHROUGH = "raw"
    FILTERED_TEXT = "text"


class Stream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class OutputEvent:
    data: bytes
    stream: Stream = Stream.STDOUT


@dataclass(frozen=True)
class PendingCommand:
    kind: str  # "line" or "raw"
    payload: Union[str, bytes]

    @classmethod
    def line(cls, text: str) -> "PendingCommand":
        return cls("line", text)

    @classmethod
    def raw(cls, payload: Union[str, bytes]) -> "PendingCommand":
        return cls("raw", payload)


class Agent(str, Enum):
    CODEX = "codex"
    CURSOR = "cursor-agent"

    @property
    def display_name(self) -> str:
        return {Agent.CODEX: "Codex", Agent.CURSOR: "Cursor"}[self]

    @property
    def launch_command(self) -> str:
        return self.value

    @property
    def output_mode(self) -> OutputMode:
        # Codex draws a full-screen TUI, so only the terminal emulator consumes its output.
        if self is Agent.CODEX:
            return OutputMode.RAW_PASSTHROUGH
        return OutputMode.FILTERED_TEXT

    @classmethod
    def parse(cls, raw: Optional[str], default: Optional["Agent"] = None) -> "Agent":
        value = (raw or "").strip().lower()
        for agent in cls:
            if value in (agent.value, agent.name.lower()):
                return agent
        return default if default is not None else cls.CODEX


class CannedCommand(str, Enum):
    BUILD_INSTALL = "build"
    GIT_SYNC = "git"
    LAUNCH_AGENT = "agent"


@dataclass(frozen=True)
class Project:
    name: str
    path: str

    @property
    def id(self) -> str:
        return self.path

    @classmethod
    def under(cls, base_path: str, name: str) -> "Project":
        if name.startswith("/"):
            return cls(name=name.rstrip("/").rsplit("/", 1)[-1] or name, path=name)
        return cls(name=name, path=f"{base_path.rstrip('/')}/{name}" if base_path else name)


@dataclass(frozen=True)
class StateSnapshot:
    project_id: str
    state: ConnectionState
    message: str = ""
    has_error: bool = False
    error_text: Optional[str] = None
    mode: OutputMode = OutputMode.RAW_PASSTHROUGH
    pending: int = 0

    def to_dict(self):
        return {
            "project": self.project_id,
            "state": self.state.value,
            "message": self.message,
            "has_error": self.has_error,
            "error_text": self.error_text,
            "mode": self.mode.value,
            "pending": self.pending,
        }
