"""Shared fixtures: in-memory SSH collaborators and a manually fired timer."""

import threading
import time
from typing import Callable, List, Optional

import pytest

from couchlink.config import AppConfig
from couchlink.errors import AuthError, ChannelError, ExecError, TransportError
from couchlink.models import OutputEvent, Project, Stream
from couchlink.session import Session, SessionManager
from couchlink.ssh import Identity


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class FakeTransport:
    def __init__(self, rig: "Rig"):
        self.rig = rig
        self.connected = False
        self.authenticated_as: Optional[str] = None
        self.closed = False

    def connect(self) -> None:
        self.rig.connect_calls += 1
        if self.rig.connect_gate is not None:
            self.rig.connect_gate.wait(5)
        if self.rig.fail_connect:
            raise TransportError("connection refused")
        self.connected = True

    def authenticate(self, identity: Identity) -> None:
        if self.rig.fail_auth:
            raise AuthError("key rejected")
        self.authenticated_as = identity.username

    def close(self) -> None:
        self.closed = True


class FakeShell:
    def __init__(self, rig: "Rig", transport: FakeTransport, events):
        self.rig = rig
        self.transport = transport
        self.events = events
        self.writes: List[bytes] = []
        self.opened_with = None
        self.closed = False
        self.fail_writes = False

    def open(self, term: str, width: int, height: int) -> None:
        if self.rig.fail_open:
            raise ChannelError("pty request denied")
        self.opened_with = (term, width, height)

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise ChannelError("socket closed")
        self.writes.append(data)

    def emit(self, data: bytes, stream: Stream = Stream.STDOUT) -> None:
        self.events.put(OutputEvent(data, stream))

    def close(self) -> None:
        self.closed = True


class FakeCommandChannel:
    def __init__(self, rig: "Rig", transport: FakeTransport):
        self.rig = rig
        self.transport = transport

    def execute(self, command: str, timeout: float = 30.0) -> str:
        self.rig.executed.append(command)
        if self.rig.exec_error is not None:
            raise self.rig.exec_error
        return self.rig.exec_output


class Rig:
    """Factories standing in for paramiko, recording everything they build."""

    def __init__(self):
        self.transports: List[FakeTransport] = []
        self.shells: List[FakeShell] = []
        self.executed: List[str] = []
        self.connect_calls = 0
        self.connect_gate: Optional[threading.Event] = None
        self.fail_connect = False
        self.fail_auth = False
        self.fail_open = False
        self.exec_output = "error: something broke\n---\n** BUILD FAILED **\n"
        self.exec_error: Optional[Exception] = None

    def transport_factory(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    def identity_factory(self) -> Identity:
        return Identity(username="dev", private_key="KEY\n")

    def shell_factory(self, transport: FakeTransport, events) -> FakeShell:
        shell = FakeShell(self, transport, events)
        self.shells.append(shell)
        return shell

    def command_factory(self, transport: FakeTransport) -> FakeCommandChannel:
        return FakeCommandChannel(self, transport)

    @property
    def shell(self) -> FakeShell:
        return self.shells[-1]


class FakeTimer:
    """Stands in for threading.Timer; tests fire it explicitly."""

    def __init__(self, registry: List["FakeTimer"], interval: float, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        registry.append(self)

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)

    def force_fire(self) -> None:
        self.function(*self.args, **self.kwargs)


@pytest.fixture
def rig() -> Rig:
    return Rig()


@pytest.fixture
def timers() -> List[FakeTimer]:
    return []


@pytest.fixture
def timer_factory(timers: List[FakeTimer]):
    def factory(interval, function, args=None, kwargs=None):
        return FakeTimer(timers, interval, function, args, kwargs)

    return factory


@pytest.fixture
def project() -> Project:
    return Project(name="demo", path="/srv/projects/demo")


@pytest.fixture
def session(rig: Rig, project: Project) -> Session:
    created = Session(
        project,
        transport_factory=rig.transport_factory,
        identity_factory=rig.identity_factory,
        shell_factory=rig.shell_factory,
        command_factory=rig.command_factory,
    )
    yield created
    created.close()


@pytest.fixture
def app_config() -> AppConfig:
    cfg = AppConfig()
    cfg.SSH_HOST = "mac.local"
    cfg.SSH_USERNAME = "dev"
    cfg.SSH_PRIVATE_KEY = "KEY"
    cfg.PROJECTS_BASE_PATH = "/srv/projects"
    cfg.DEVICE_UDID = "00008110-ABCDEF"
    cfg.DEVELOPMENT_TEAM = "TEAM123"
    cfg.KEYCHAIN_PASSWORD = "it's secret"
    cfg.GIT_ONE_LINER = "git pull --rebase && git push"
    return cfg


@pytest.fixture
def manager(rig: Rig, app_config: AppConfig) -> SessionManager:
    created = SessionManager(
        app_config,
        transport_factory=rig.transport_factory,
        identity_factory=rig.identity_factory,
        shell_factory=rig.shell_factory,
        command_factory=rig.command_factory,
    )
    yield created
    created.close_all()
