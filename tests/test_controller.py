"""Tests for the per-project SessionController façade."""

import threading

import pytest

from conftest import wait_until
from couchlink.config import COPY_FALLBACK_TEXT
from couchlink.controller import SessionController, control_byte
from couchlink.errors import CouchlinkError
from couchlink.models import Agent, CannedCommand, ConnectionState, OutputMode

CD = b"cd /srv/projects/demo\n"


@pytest.fixture
def controller(manager, project, app_config, timer_factory):
    created = SessionController(manager, project, app_config, clipboard=lambda: "from clipboard", timer_factory=timer_factory)
    yield created
    created.close()


class TestControlByte:
    @pytest.mark.parametrize("key, expected", [
        ("c", "\x03"),
        ("C", "\x03"),
        ("ctrl_c", "\x03"),
        ("Ctrl+D", "\x04"),
        ("ctrl-z", "\x1a"),
        ("[", "\x1b"),
        ("@", "\x00"),
    ])
    def test_maps_keys(self, key, expected):
        assert control_byte(key) == expected

    @pytest.mark.parametrize("key", ["", "ab", "1", "ctrl_"])
    def test_rejects_unmappable_keys(self, key):
        with pytest.raises(ValueError):
            control_byte(key)


class TestLifecycle:
    def test_default_agent_sets_mode(self, controller):
        assert controller.agent is Agent.CODEX
        assert controller.session.mode is OutputMode.RAW_PASSTHROUGH

    def test_start_connects_in_background(self, controller, rig):
        thread = controller.start()
        thread.join(2)
        assert controller.state is ConnectionState.READY
        assert rig.shell.writes == [CD]

    def test_listeners_receive_snapshots(self, controller):
        snapshots = []
        controller.add_listener(snapshots.append)

        controller.connect()

        assert [s.state for s in snapshots] == [ConnectionState.CONNECTING, ConnectionState.READY]
        assert snapshots[-1].project_id == "/srv/projects/demo"

    def test_failed_snapshot_carries_message(self, controller, rig):
        rig.fail_connect = True

        controller.connect()
        snapshot = controller.snapshot()

        assert snapshot.state is ConnectionState.FAILED
        assert snapshot.message == "connection refused"

    def test_ready_snapshot_has_no_message(self, controller):
        controller.connect()
        assert controller.snapshot().message == ""

    def test_close_releases_session(self, controller, manager, project, rig):
        controller.connect()
        snapshots = []
        controller.add_listener(snapshots.append)

        controller.close()

        assert manager.get(project.id) is None
        assert rig.shell.closed
        assert snapshots[-1].state is ConnectionState.IDLE
        with pytest.raises(CouchlinkError):
            controller.send_line("ls")

    def test_close_is_idempotent(self, controller):
        controller.close()
        controller.close()
        assert controller.closed


class TestSending:
    def test_send_line_connects_first(self, controller, rig):
        controller.send_line("ls")
        assert rig.shell.writes == [CD, b"ls\r\n"]

    def test_send_control(self, controller, rig):
        controller.connect()
        controller.send_control("c")
        assert rig.shell.writes[-1] == b"\x03"

    def test_paste_uses_clipboard(self, controller, rig):
        controller.connect()
        assert controller.paste() is True
        assert rig.shell.writes[-1] == b"from clipboard"

    def test_paste_explicit_text_is_raw(self, controller, rig):
        controller.connect()
        controller.paste("line one\nline two")
        assert rig.shell.writes[-1] == b"line one\nline two"

    def test_paste_nothing(self, manager, project, app_config, rig):
        controller = SessionController(manager, project, app_config, clipboard=lambda: None)
        assert controller.paste() is False
        assert controller.paste("") is False
        assert rig.shells == []
        controller.close()

    def test_canned_git_sync(self, controller, rig):
        controller.send_canned(CannedCommand.GIT_SYNC)
        assert rig.shell.writes == [CD, b"git pull --rebase && git push\r\n"]

    def test_canned_agent_launch_follows_current_agent(self, controller, rig):
        controller.set_agent("cursor-agent")
        controller.send_canned("agent")
        assert rig.shell.writes[-1] == b"cursor-agent\r\n"

    def test_canned_build_is_one_write(self, controller, rig):
        controller.connect()
        controller.send_canned("build")

        assert len(rig.shell.writes) == 2
        script = rig.shell.writes[1].decode("utf-8")
        assert script.startswith("cat > /tmp/build_couchlink.sh << 'BUILDSCRIPT'\n")
        assert script.endswith("/tmp/build_couchlink.sh\n")
        assert "DEVICE='00008110-ABCDEF'" in script
        assert "-p 'it'\"'\"'s secret'" in script

    def test_canned_sends_keep_queue_order(self, controller, rig):
        rig.connect_gate = threading.Event()
        thread = controller.start()
        assert wait_until(lambda: rig.connect_calls == 1)

        controller.send_line("echo before")
        controller.send_canned("git")
        controller.send_raw("\x03")
        assert controller.snapshot().pending == 3

        rig.connect_gate.set()
        thread.join(2)

        assert rig.shell.writes == [CD, b"echo before\r\n", b"git pull --rebase && git push\r\n", b"\x03"]

    def test_unknown_canned_kind(self, controller):
        with pytest.raises(ValueError):
            controller.send_canned("deploy")


class TestModes:
    def test_set_agent_switches_mode(self, controller):
        controller.set_agent(Agent.CURSOR)
        assert controller.session.mode is OutputMode.FILTERED_TEXT
        controller.set_agent("codex")
        assert controller.session.mode is OutputMode.RAW_PASSTHROUGH

    def test_unknown_agent_keeps_current(self, controller):
        controller.set_agent("cursor")
        controller.set_agent("vim")
        assert controller.agent is Agent.CURSOR

    def test_set_mode_by_value(self, controller):
        controller.set_mode("text")
        assert controller.snapshot().mode is OutputMode.FILTERED_TEXT

    def test_set_mode_rejects_unknown(self, controller):
        with pytest.raises(ValueError):
            controller.set_mode("fancy")

    def test_text_feed_follows_mode(self, controller, rig):
        received = []
        controller.session.text_feed.subscribe(received.append)
        controller.connect()

        rig.shell.emit(b"hidden ")
        assert controller.session.wait_for_output()
        controller.set_agent("cursor-agent")
        rig.shell.emit(b"shown")
        assert controller.session.wait_for_output()

        assert received == ["shown"]


class TestBuildErrors:
    def test_failure_output_is_extracted_through_command_channel(self, controller, rig, timers):
        snapshots = []
        controller.add_listener(snapshots.append)
        controller.connect()

        rig.shell.emit(b"main.swift:1:1: error: cannot find 'foo'\n")
        rig.shell.emit(b"** BUILD FAILED **\n")
        assert controller.session.wait_for_output()
        assert controller.has_error
        assert len(timers) == 2

        timers[-1].fire()

        assert len(rig.executed) == 1
        assert "grep -E" in rig.executed[0]
        assert controller.error_text == rig.exec_output.strip()
        assert snapshots[-1].has_error
        assert snapshots[-1].error_text == rig.exec_output.strip()
        assert rig.shell.writes == [CD]

    def test_success_clears_banner(self, controller, rig):
        controller.connect()
        rig.shell.emit(b"error: flaky\n")
        rig.shell.emit(b"** BUILD SUCCEEDED **\n")
        assert controller.session.wait_for_output()

        assert not controller.has_error
        assert controller.snapshot().error_text is None

    def test_copy_errors_when_disconnected_falls_back(self, controller):
        assert controller.copy_errors() == COPY_FALLBACK_TEXT.format(log_path="/tmp/xcodebuild.log")

    def test_copy_errors_reads_log(self, controller, rig):
        controller.connect()
        rig.exec_output = "=== Build Errors ===\n"
        assert controller.copy_errors() == "=== Build Errors ===\n"
        assert "=== Build Summary ===" in rig.executed[-1]
