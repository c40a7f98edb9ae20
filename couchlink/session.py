import codecs
import os
import queue
import shlex
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from couchlink.config import (
    CURSOR_POSITION_QUERY, EXEC_TIMEOUT, TERMINAL_HEIGHT, TERMINAL_TYPE, TERMINAL_WIDTH,
    AppConfig, cursor_position_report,
)
from couchlink.errors import ChannelError, CouchlinkError, ExecError
from couchlink.models import (
    ConnectionState, OutputEvent, OutputMode, PendingCommand, Project, Stream,
)
from couchlink.ssh import CommandChannel, Identity, ShellChannel, SSHTransport
from couchlink.utils import as_bytes, iso_now, json_line, log_error, printable, safe_name

StateListener = Callable[["Session", ConnectionState, Optional[BaseException]], None]

_STOP = object()


class Feed:
    """Thread-safe publish/subscribe fan-out for one output stream."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: List[Callable[[Any], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Any], None]) -> Callable[[Any], None]:
        with self._lock:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Callable[[Any], None]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, item: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(item)
            except Exception as exc:
                log_error(f"{self.name} subscriber failed: {exc}")


class CursorQueryFilter:
    """Removes cursor-position queries from a byte stream and counts them.

    A trailing partial query is held back until the next chunk completes or
    breaks it, so a query split across two reads is still answered once.
    """

    def __init__(self, query: bytes = CURSOR_POSITION_QUERY):
        self.query = query
        self._carry = b""

    def feed(self, data: bytes) -> Tuple[bytes, int]:
        cleaned = self._carry + data
        count = 0
        # removing one query can join its neighbours into another
        index = cleaned.find(self.query)
        while index != -1:
            cleaned = cleaned[:index] + cleaned[index + len(self.query):]
            count += 1
            index = cleaned.find(self.query, max(0, index - len(self.query) + 1))
        self._carry = b""
        for size in range(len(self.query) - 1, 0, -1):
            if cleaned.endswith(self.query[:size]):
                self._carry = cleaned[-size:]
                cleaned = cleaned[:-size]
                break
        return cleaned, count


class Session:
    def __init__(
        self,
        project: Project,
        transport_factory: Callable[[], SSHTransport],
        identity_factory: Callable[[], Identity],
        shell_factory: Callable[..., ShellChannel] = ShellChannel,
        command_factory: Callable[..., CommandChannel] = CommandChannel,
        width: int = TERMINAL_WIDTH,
        height: int = TERMINAL_HEIGHT,
        mode: OutputMode = OutputMode.RAW_PASSTHROUGH,
        cache_dirs: Optional[Dict[str, str]] = None,
        connect_in_background: bool = False,
    ):
        self.project = project
        self.width = width
        self.height = height
        self.connect_in_background = connect_in_background

        self._transport_factory = transport_factory
        self._identity_factory = identity_factory
        self._shell_factory = shell_factory
        self._command_factory = command_factory

        self.state = ConnectionState.IDLE
        self.last_error: Optional[BaseException] = None
        self.mode = mode
        self._pending: Deque[PendingCommand] = deque()

        self._transport: Optional[SSHTransport] = None
        self._shell: Optional[ShellChannel] = None
        self._events: Optional["queue.Queue[Any]"] = None
        self._dispatcher: Optional[threading.Thread] = None

        self.raw_feed = Feed("raw")
        self.text_feed = Feed("text")
        self._state_listeners: List[StateListener] = []

        self._lock = threading.RLock()
        self.created_at = datetime.now()
        self.session_log_path = self._build_session_log_path(cache_dirs)
        self._log_session("SYS", {"event": "session_created", "path": project.path})

    @staticmethod
    def _new_decoder():
        return codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _build_session_log_path(self, cache_dirs: Optional[Dict[str, str]]) -> Optional[str]:
        if not cache_dirs or not cache_dirs.get("sessions_dir"):
            return None
        stamp = self.created_at.strftime("%Y%m%d_%H%M%S")
        filename = f"{safe_name(self.project.name)}__{stamp}.log"
        return os.path.join(cache_dirs["sessions_dir"], filename)

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.session_log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "project": self.project.id}
        data.update(payload)
        json_line(self.session_log_path, data)

    # ========= state =========

    def add_state_listener(self, listener: StateListener) -> None:
        with self._lock:
            self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        with self._lock:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

    def _set_state(self, state: ConnectionState, error: Optional[BaseException] = None) -> None:
        self.state = state
        self.last_error = error
        payload: Dict[str, Any] = {"event": "state", "state": state.value}
        if error is not None:
            payload["error"] = str(error)
        self._log_session("SYS", payload)

    def _notify_state(self) -> None:
        with self._lock:
            state = self.state
            error = self.last_error
            listeners = list(self._state_listeners)
        for listener in listeners:
            try:
                listener(self, state, error)
            except Exception as exc:
                log_error(f"state listener failed for {self.project.name}: {exc}")

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def set_mode(self, mode: OutputMode) -> None:
        with self._lock:
            if self.mode is mode:
                return
            self.mode = mode
        self._log_session("SYS", {"event": "mode", "mode": mode.value})

    # ========= connect =========

    def connect_if_needed(self) -> ConnectionState:
        with self._lock:
            if self.state in (ConnectionState.READY, ConnectionState.CONNECTING):
                return self.state
            self._set_state(ConnectionState.CONNECTING)
        self._notify_state()
        return self._connect()

    def _connect(self) -> ConnectionState:
        transport: Optional[SSHTransport] = None
        shell: Optional[ShellChannel] = None
        events: "queue.Queue[Any]" = queue.Queue()
        try:
            transport = self._transport_factory()
            transport.connect()
            transport.authenticate(self._identity_factory())
            shell = self._shell_factory(transport, events)
            shell.open(TERMINAL_TYPE, self.width, self.height)
        except Exception as exc:
            if not isinstance(exc, CouchlinkError):
                log_error(f"unexpected connect error for {self.project.name}: {exc!r}")
            self._discard(shell, transport)
            with self._lock:
                if self.state is ConnectionState.CONNECTING:
                    self._set_state(ConnectionState.FAILED, exc)
            log_error(f"connect failed for {self.project.name}: {exc}")
            self._notify_state()
            return self.state

        with self._lock:
            if self.state is not ConnectionState.CONNECTING:
                # closed while the handshake was in flight
                self._discard(shell, transport)
                return self.state
            try:
                shell.write(as_bytes(f"cd {shlex.quote(self.project.path)}\n"))
            except ChannelError as exc:
                self._discard(shell, transport)
                self._set_state(ConnectionState.FAILED, exc)
                log_error(f"connect failed for {self.project.name}: {exc}")
            else:
                self._transport = transport
                self._shell = shell
                self._events = events
                self._dispatcher = threading.Thread(target=self._dispatch_loop, args=(events,), daemon=True)
                self._dispatcher.start()
                self._set_state(ConnectionState.READY)
                self._flush_pending()
        self._notify_state()
        return self.state

    @staticmethod
    def _discard(shell: Optional[ShellChannel], transport: Optional[SSHTransport]) -> None:
        if shell is not None:
            shell.close()
        if transport is not None:
            transport.close()

    def _trigger_connect(self) -> None:
        if self.connect_in_background:
            threading.Thread(target=self.connect_if_needed, daemon=True).start()
        else:
            self.connect_if_needed()

    # ========= outbound =========

    def send_line(self, text: str) -> bool:
        return self._send(PendingCommand.line(text))

    def send_raw(self, payload: Union[str, bytes]) -> bool:
        return self._send(PendingCommand.raw(payload))

    def _send(self, command: PendingCommand) -> bool:
        """Write now when ready; otherwise queue and start connecting. Returns True if written."""
        with self._lock:
            if self.is_ready:
                written = self._write_command(command)
                if not written:
                    self._pending.appendleft(command)
                ready = self.is_ready
            else:
                self._pending.append(command)
                self._log_session("IN", {"event": "queued", "kind": command.kind, "payload": printable(command.payload)})
                written = False
                ready = False
        if not ready:
            self._trigger_connect()
        return written

    def _encode(self, command: PendingCommand) -> bytes:
        if command.kind == "line":
            line = command.payload if isinstance(command.payload, str) else command.payload.decode("utf-8", errors="replace")
            if not line.endswith("\n") and not line.endswith("\r"):
                line += "\r\n"
            return as_bytes(line)
        return as_bytes(command.payload)

    def _write_command(self, command: PendingCommand) -> bool:
        ok = self._write_now(self._encode(command))
        if ok:
            self._log_session("IN", {"event": "send_" + command.kind, "payload": printable(command.payload)})
        return ok

    def _flush_pending(self) -> None:
        while self._pending and self.is_ready:
            command = self._pending.popleft()
            if not self._write_command(command):
                self._pending.appendleft(command)
                break

    def _write_now(self, data: bytes) -> bool:
        shell = self._shell
        if shell is None:
            return False
        try:
            shell.write(data)
            return True
        except ChannelError as exc:
            log_error(f"write failed for {self.project.name}: {exc}")
            self._teardown("write failed")
            return False

    def _teardown(self, reason: str) -> None:
        shell, transport, events = self._shell, self._transport, self._events
        self._shell = None
        self._transport = None
        self._events = None
        self._dispatcher = None
        self._discard(shell, transport)
        if events is not None:
            events.put(_STOP)
        self._set_state(ConnectionState.IDLE)
        self._log_session("SYS", {"event": "teardown", "reason": reason})

    # ========= inbound =========

    def _dispatch_loop(self, events: "queue.Queue[Any]") -> None:
        # Filter and decoder state belongs to this connection only.
        filters = {stream: CursorQueryFilter() for stream in Stream}
        decoders = {stream: self._new_decoder() for stream in Stream}
        while True:
            event = events.get()
            try:
                if event is _STOP:
                    return
                self._deliver(event, events, filters, decoders)
            except Exception as exc:
                log_error(f"output dispatch failed for {self.project.name}: {exc}")
            finally:
                events.task_done()

    def _is_current(self, events: "queue.Queue[Any]") -> bool:
        with self._lock:
            return self._events is events

    def _deliver(
        self,
        event: OutputEvent,
        events: "queue.Queue[Any]",
        filters: Dict[Stream, CursorQueryFilter],
        decoders: Dict[Stream, Any],
    ) -> None:
        # output still queued from a torn-down shell is dropped
        if not self._is_current(events):
            return
        self.raw_feed.publish(event)
        self._log_session("OUT", {"stream": event.stream.value, "bytes": len(event.data)})

        cleaned, queries = filters[event.stream].feed(event.data)
        for _ in range(queries):
            self._reply_cursor_position(events)

        text = decoders[event.stream].decode(cleaned)
        with self._lock:
            mode = self.mode
        if mode is OutputMode.RAW_PASSTHROUGH:
            return
        if text:
            self.text_feed.publish(text)

    def _reply_cursor_position(self, events: "queue.Queue[Any]") -> None:
        with self._lock:
            if self._events is not events:
                return
            if self._write_now(cursor_position_report(self.width, self.height)):
                self._log_session("IN", {"event": "cursor_position_report"})

    def wait_for_output(self, timeout: float = 5.0) -> bool:
        """Block until every output event received so far has been delivered."""
        events = self._events
        if events is None:
            return True
        with events.all_tasks_done:
            return events.all_tasks_done.wait_for(lambda: events.unfinished_tasks == 0, timeout)

    # ========= one-shot commands =========

    def execute_command(self, command: str, timeout: float = EXEC_TIMEOUT) -> str:
        with self._lock:
            transport = self._transport
            ready = self.is_ready
        if transport is None or not ready:
            raise ExecError("Not connected")
        self._log_session("IN", {"event": "exec", "command": printable(command)})
        return self._command_factory(transport).execute(command, timeout)

    # ========= lifecycle =========

    def close(self) -> None:
        with self._lock:
            discarded = len(self._pending)
            self._pending.clear()
            was_idle = self.state is ConnectionState.IDLE and self._shell is None
            self._teardown("closed")
            if discarded:
                self._log_session("SYS", {"event": "pending_discarded", "count": discarded})
        if not was_idle:
            self._notify_state()

    def info(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "project": self.project.id,
                "name": self.project.name,
                "state": self.state.value,
                "error": str(self.last_error) if self.last_error else "",
                "mode": self.mode.value,
                "pending": len(self._pending),
                "geometry": f"{self.width}x{self.height}",
                "created_at": self.created_at.isoformat(),
                "session_log_path": self.session_log_path,
            }


class SessionManager:
    """Owns exactly one Session per project id, created lazily."""

    def __init__(
        self,
        app_config: AppConfig,
        transport_factory: Optional[Callable[[], SSHTransport]] = None,
        identity_factory: Optional[Callable[[], Identity]] = None,
        shell_factory: Callable[..., ShellChannel] = ShellChannel,
        command_factory: Callable[..., CommandChannel] = CommandChannel,
        cache_dirs: Optional[Dict[str, str]] = None,
        connect_in_background: bool = False,
    ):
        self.config = app_config
        self.transport_factory = transport_factory or self._default_transport
        self.identity_factory = identity_factory or self._default_identity
        self.shell_factory = shell_factory
        self.command_factory = command_factory
        self.cache_dirs = cache_dirs
        self.connect_in_background = connect_in_background

        self.sessions: Dict[str, Session] = {}
        self.lock = threading.Lock()

    def _default_transport(self) -> SSHTransport:
        return SSHTransport(self.config.SSH_HOST, self.config.SSH_PORT, self.config.SSH_VERIFY_HOST_KEY)

    def _default_identity(self) -> Identity:
        return Identity(
            username=self.config.SSH_USERNAME or "",
            private_key=self.config.private_key_text(),
            passphrase=self.config.SSH_PRIVATE_KEY_PASSPHRASE,
        )

    def session_for(self, project: Project) -> Session:
        with self.lock:
            existing = self.sessions.get(project.id)
            if existing is not None:
                return existing
            session = Session(
                project,
                transport_factory=self.transport_factory,
                identity_factory=self.identity_factory,
                shell_factory=self.shell_factory,
                command_factory=self.command_factory,
                cache_dirs=self.cache_dirs,
                connect_in_background=self.connect_in_background,
            )
            self.sessions[project.id] = session
            return session

    def get(self, project_id: str) -> Optional[Session]:
        with self.lock:
            return self.sessions.get(project_id)

    def close_session(self, project_id: str) -> Dict[str, Any]:
        with self.lock:
            session = self.sessions.pop(project_id, None)
        if not session:
            return {"success": False, "error": f"session for {project_id} not found"}
        session.close()
        return {"success": True, "message": f"Session for {project_id} closed"}

    def list_sessions(self) -> Dict[str, Any]:
        with self.lock:
            sessions = list(self.sessions.values())
        rows = []
        for session in sessions:
            info = session.info()
            rows.append({
                "id": info["project"],
                "name": info["name"],
                "state": info["state"],
                "mode": info["mode"],
                "pending": info["pending"],
            })
        rows.sort(key=lambda item: item["name"])
        return {"success": True, "sessions": rows, "total": len(rows)}

    def close_all(self) -> None:
        with self.lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
        for session in sessions:
            session.close()

