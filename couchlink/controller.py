import threading
from typing import Any, Callable, List, Optional, Union

from couchlink.config import AppConfig
from couchlink.errors import CouchlinkError
from couchlink.models import (
    Agent, CannedCommand, ConnectionState, OutputMode, Project, StateSnapshot,
)
from couchlink.monitor import BuildErrorMonitor
from couchlink.scripts import agent_launch_command, build_install_script, git_sync_script
from couchlink.session import Session, SessionManager
from couchlink.utils import log_error, printable

SnapshotListener = Callable[[StateSnapshot], None]


def control_byte(key: str) -> str:
    """Map a key such as ``c`` or ``ctrl_c`` to its control character (``\\x03``)."""
    name = key.strip().lower()
    if name.startswith("ctrl_") or name.startswith("ctrl-") or name.startswith("ctrl+"):
        name = name[5:]
    if len(name) != 1:
        raise ValueError(f"control key must be a single character, got '{key}'")
    code = ord(name.upper())
    if not 0x40 <= code <= 0x5F:
        raise ValueError(f"no control character for '{key}'")
    return chr(code - 0x40)


class SessionController:
    """Per-project façade: one Session plus one BuildErrorMonitor, driven by user intents."""

    def __init__(
        self,
        manager: SessionManager,
        project: Project,
        app_config: Optional[AppConfig] = None,
        clipboard: Optional[Callable[[], Optional[str]]] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.manager = manager
        self.project = project
        self.config = app_config or manager.config
        self.clipboard = clipboard
        self.closed = False

        self.session: Session = manager.session_for(project)
        self.monitor = BuildErrorMonitor(
            self.session.execute_command,
            log_path=self.config.BUILD_LOG_PATH,
            delay=self.config.BUILD_ERROR_DEBOUNCE,
            failure_signatures=self.config.FAILURE_SIGNATURES,
            timer_factory=timer_factory,
        )
        self.monitor.attach(self.session.raw_feed)
        self.monitor.add_listener(self._on_monitor_change)
        self.session.add_state_listener(self._on_state_change)

        self._listeners: List[SnapshotListener] = []
        self.agent = Agent.parse(self.config.DEFAULT_AGENT)
        self.session.set_mode(self.agent.output_mode)

    def _log(self, message: str) -> None:
        log_error(f"[{self.project.name}] {message}")

    def _require_open(self) -> None:
        if self.closed:
            raise CouchlinkError(f"controller for {self.project.name} is closed")

    # ========= republished state =========

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def has_error(self) -> bool:
        return self.monitor.has_error

    @property
    def error_text(self) -> Optional[str]:
        return self.monitor.error_text

    def snapshot(self) -> StateSnapshot:
        error = self.session.last_error
        return StateSnapshot(
            project_id=self.project.id,
            state=self.session.state,
            message=str(error) if error is not None and self.session.state is ConnectionState.FAILED else "",
            has_error=self.monitor.has_error,
            error_text=self.monitor.error_text,
            mode=self.session.mode,
            pending=self.session.pending_count,
        )

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def _publish(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                self._log(f"listener failed: {exc}")

    def _on_state_change(self, session: Session, state: ConnectionState, error: Optional[BaseException]) -> None:
        if state is ConnectionState.FAILED:
            self._log(f"connection failed: {error}")
        self._publish()

    def _on_monitor_change(self, monitor: BuildErrorMonitor) -> None:
        self._publish()

    # ========= user intents =========

    def start(self) -> threading.Thread:
        self._require_open()
        thread = threading.Thread(target=self.session.connect_if_needed, daemon=True)
        thread.start()
        return thread

    def connect(self) -> ConnectionState:
        self._require_open()
        return self.session.connect_if_needed()

    def paste(self, text: Optional[str] = None) -> bool:
        self._require_open()
        if text is None and self.clipboard is not None:
            text = self.clipboard()
        if not text:
            return False
        self._log(f"pasted {len(text)} chars")
        self.session.send_raw(text)
        return True

    def send_line(self, text: str) -> None:
        self._require_open()
        self.session.send_line(text)

    def send_raw(self, sequence: Union[str, bytes]) -> None:
        self._require_open()
        self._log(f"sending raw sequence: {printable(sequence)}")
        self.session.send_raw(sequence)

    def send_control(self, key: str) -> None:
        self.send_raw(control_byte(key))

    def canned_text(self, kind: Union[CannedCommand, str]) -> str:
        kind = CannedCommand(kind)
        if kind is CannedCommand.BUILD_INSTALL:
            return build_install_script(
                device_udid=self.config.DEVICE_UDID,
                development_team=self.config.DEVELOPMENT_TEAM,
                keychain_password=self.config.KEYCHAIN_PASSWORD,
                log_path=self.config.BUILD_LOG_PATH,
            )
        if kind is CannedCommand.GIT_SYNC:
            return git_sync_script(self.config.GIT_ONE_LINER)
        return agent_launch_command(self.agent)

    def send_canned(self, kind: Union[CannedCommand, str]) -> None:
        self._require_open()
        text = self.canned_text(kind)
        self._log(f"sending canned command: {CannedCommand(kind).value}")
        # One send_line call is one channel write, so queued or concurrent input cannot interleave.
        self.session.send_line(text)

    def set_agent(self, agent: Union[Agent, str]) -> None:
        self._require_open()
        self.agent = agent if isinstance(agent, Agent) else Agent.parse(agent, default=self.agent)
        self.session.set_mode(self.agent.output_mode)
        self._log(f"current agent set to: {self.agent.display_name}")
        self._publish()

    def set_mode(self, mode: Union[OutputMode, str]) -> None:
        self._require_open()
        self.session.set_mode(OutputMode(mode))
        self._publish()

    def copy_errors(self) -> str:
        text = self.monitor.copy_errors()
        self._log(f"build errors copied ({len(text)} characters)")
        return text

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.session.remove_state_listener(self._on_state_change)
        self.monitor.detach()
        self.monitor.reset()
        self.manager.close_session(self.project.id)
        self._publish()
