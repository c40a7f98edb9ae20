import io
import os
import queue
import socket
import threading
import time
from dataclasses import dataclass
from typing import Optional

import paramiko

from couchlink.config import (
    AUTH_TIMEOUT, BUFFER_SIZE, CONNECT_TIMEOUT, EXEC_TIMEOUT, KEEPALIVE_INTERVAL,
    READER_POLL_INTERVAL,
)
from couchlink.errors import AuthError, ChannelError, ExecError, TransportError
from couchlink.models import OutputEvent, Stream
from couchlink.utils import log_error

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@dataclass
class Identity:
    username: str
    private_key: str
    passphrase: Optional[str] = None


def load_private_key(text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    last_error: Optional[Exception] = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase or None)
        except paramiko.PasswordRequiredException as exc:
            raise AuthError(f"private key is encrypted and no passphrase was given: {exc}") from exc
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise AuthError(f"unsupported or invalid private key: {last_error}")


class SSHTransport:
    def __init__(self, host: str, port: int = 22, verify_host_key: bool = True):
        self.host = host
        self.port = port
        self.verify_host_key = verify_host_key
        self.transport: Optional[paramiko.Transport] = None
        self._sock: Optional[socket.socket] = None

    def connect(self) -> None:
        try:
            self._sock = socket.create_connection((self.host, self.port), timeout=CONNECT_TIMEOUT)
            self.transport = paramiko.Transport(self._sock)
            self.transport.start_client(timeout=CONNECT_TIMEOUT)
            self.transport.set_keepalive(KEEPALIVE_INTERVAL)
        except (OSError, paramiko.SSHException, EOFError) as exc:
            self.close()
            raise TransportError(f"connect to {self.host}:{self.port} failed: {exc}") from exc

        if self.verify_host_key:
            self._check_host_key()

    def _check_host_key(self) -> None:
        host_keys = paramiko.HostKeys()
        known_hosts = os.path.expanduser("~/.ssh/known_hosts")
        if os.path.exists(known_hosts):
            try:
                host_keys.load(known_hosts)
            except (OSError, paramiko.SSHException) as exc:
                log_error(f"known_hosts load failed: {exc}")

        server_key = self.transport.get_remote_server_key()
        lookup = self.host if self.port == 22 else f"[{self.host}]:{self.port}"
        if not host_keys.check(lookup, server_key):
            self.close()
            raise TransportError(
                f"host key for {lookup} is not in known_hosts (disable verification to accept it)"
            )

    def authenticate(self, identity: Identity) -> None:
        if not self.transport or not self.transport.is_active():
            raise AuthError("transport is not connected")
        pkey = load_private_key(identity.private_key, identity.passphrase)
        try:
            self.transport.auth_publickey(identity.username, pkey, event=None)
        except paramiko.AuthenticationException as exc:
            raise AuthError(f"authentication rejected for {identity.username}: {exc}") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise AuthError(f"authentication failed for {identity.username}: {exc}") from exc
        if not self.transport.is_authenticated():
            raise AuthError(f"authentication incomplete for {identity.username}")

    def open_channel(self, timeout: float = AUTH_TIMEOUT) -> paramiko.Channel:
        if not self.is_active():
            raise ChannelError("transport is not connected")
        return self.transport.open_session(timeout=timeout)

    def is_active(self) -> bool:
        return bool(self.transport and self.transport.is_active())

    def close(self) -> None:
        try:
            if self.transport:
                self.transport.close()
        except Exception as exc:
            log_error(f"transport close failed: {exc}")
        self.transport = None
        try:
            if self._sock:
                self._sock.close()
        except OSError:
            pass
        self._sock = None


class ShellChannel:
    """PTY-backed interactive shell. Output is pushed onto ``events`` as OutputEvents."""

    def __init__(self, transport: SSHTransport, events: "queue.Queue[OutputEvent]"):
        self.transport = transport
        self.events = events
        self.channel: Optional[paramiko.Channel] = None
        self._stop = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._write_lock = threading.Lock()

    def open(self, term: str, width: int, height: int) -> None:
        try:
            self.channel = self.transport.open_channel()
            self.channel.get_pty(term=term, width=width, height=height)
            self.channel.invoke_shell()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self.close()
            raise ChannelError(f"shell open failed: {exc}") from exc

        self._reader = threading.Thread(target=self._reader_loop, daemon=True)
        self._reader.start()

    def _reader_loop(self) -> None:
        channel = self.channel
        try:
            while not self._stop.is_set() and channel is not None:
                got_data = False
                if channel.recv_ready():
                    chunk = channel.recv(BUFFER_SIZE)
                    if chunk:
                        self.events.put(OutputEvent(chunk, Stream.STDOUT))
                        got_data = True
                if channel.recv_stderr_ready():
                    chunk = channel.recv_stderr(BUFFER_SIZE)
                    if chunk:
                        self.events.put(OutputEvent(chunk, Stream.STDERR))
                        got_data = True
                if not got_data:
                    if channel.closed or channel.exit_status_ready():
                        break
                    time.sleep(READER_POLL_INTERVAL)
        except Exception as exc:
            if not self._stop.is_set():
                log_error(f"shell reader stopped: {exc}")

    def write(self, data: bytes) -> None:
        if not self.channel or self.channel.closed:
            raise ChannelError("shell channel is not open")
        try:
            with self._write_lock:
                self.channel.sendall(data)
        except (OSError, paramiko.SSHException) as exc:
            raise ChannelError(f"shell write failed: {exc}") from exc

    def close(self) -> None:
        self._stop.set()
        try:
            if self.channel:
                self.channel.close()
        except Exception as exc:
            log_error(f"shell close failed: {exc}")
        self.channel = None


class CommandChannel:
    """One-shot exec channel on an authenticated transport."""

    def __init__(self, transport: SSHTransport):
        self.transport = transport

    def execute(self, command: str, timeout: float = EXEC_TIMEOUT) -> str:
        try:
            channel = self.transport.open_channel()
        except (ChannelError, paramiko.SSHException, OSError, EOFError) as exc:
            raise ExecError(f"could not open command channel: {exc}") from exc

        chunks = []
        try:
            channel.set_combine_stderr(True)
            channel.settimeout(timeout)
            channel.exec_command(command)
            while True:
                data = channel.recv(BUFFER_SIZE)
                if not data:
                    break
                chunks.append(data)
            channel.recv_exit_status()
        except socket.timeout as exc:
            raise ExecError(f"command timed out after {timeout}s") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise ExecError(f"command failed: {exc}") from exc
        finally:
            channel.close()
        return b"".join(chunks).decode("utf-8", errors="replace")
