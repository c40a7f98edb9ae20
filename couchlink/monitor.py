import shlex
import threading
from typing import Any, Callable, List, Optional, Sequence

from couchlink.config import (
    COPY_ERROR_LINES, COPY_FALLBACK_TEXT, COPY_SUMMARY_LINES, DEFAULT_BUILD_LOG_PATH,
    DEFAULT_ERROR_DEBOUNCE, DEFAULT_FAILURE_SIGNATURES, ERROR_TEXT_UNAVAILABLE,
    EXTRACT_ERROR_LINES, EXTRACT_SUMMARY_LINES, SUCCESS_SIGNATURE,
)
from couchlink.models import OutputEvent
from couchlink.session import Feed
from couchlink.utils import log_error

MonitorListener = Callable[["BuildErrorMonitor"], None]

_ERROR_LINE_PATTERN = "(error:|warning:|BUILD FAILED|The following build commands failed)"


def extraction_command(
    log_path: str = DEFAULT_BUILD_LOG_PATH,
    error_lines: int = EXTRACT_ERROR_LINES,
    summary_lines: int = EXTRACT_SUMMARY_LINES,
) -> str:
    path = shlex.quote(log_path)
    return (
        f"if [ -f {path} ]; then\n"
        f"    grep -E \"{_ERROR_LINE_PATTERN}\" {path} | tail -{error_lines}\n"
        f"    echo \"---\"\n"
        f"    tail -{summary_lines} {path} | grep -E \"(error:|BUILD FAILED|failed)\" || tail -{summary_lines} {path}\n"
        f"else\n"
        f"    echo \"Log file not found at {log_path}\"\n"
        f"fi\n"
    )


def copy_command(
    log_path: str = DEFAULT_BUILD_LOG_PATH,
    error_lines: int = COPY_ERROR_LINES,
    summary_lines: int = COPY_SUMMARY_LINES,
) -> str:
    path = shlex.quote(log_path)
    return (
        f"if [ -f {path} ]; then\n"
        f"    echo \"=== Build Errors ===\"\n"
        f"    grep -E \"{_ERROR_LINE_PATTERN}\" {path} | tail -{error_lines}\n"
        f"    echo \"\"\n"
        f"    echo \"=== Build Summary ===\"\n"
        f"    tail -{summary_lines} {path}\n"
        f"else\n"
        f"    echo \"Log file not found at {log_path}\"\n"
        f"fi\n"
    )


class BuildErrorMonitor:
    """Watches raw shell output for build failures and pulls a summary from the build log.

    Detection runs on every chunk of the raw feed. The first failure match
    raises ``has_error``; every further match restarts a single debounce timer,
    so a burst of error output ends in exactly one extraction, issued through
    ``execute`` (a one-shot command runner, never the interactive shell).
    A success signature clears everything and invalidates any pending timer.
    """

    def __init__(
        self,
        execute: Callable[[str], str],
        log_path: str = DEFAULT_BUILD_LOG_PATH,
        delay: float = DEFAULT_ERROR_DEBOUNCE,
        failure_signatures: Sequence[str] = DEFAULT_FAILURE_SIGNATURES,
        success_signature: str = SUCCESS_SIGNATURE,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self._execute = execute
        self.log_path = log_path
        self.delay = delay
        self.failure_signatures = [sig for sig in failure_signatures if sig]
        self._signatures_lower = [sig.lower() for sig in self.failure_signatures]
        self.success_signature = success_signature
        self._timer_factory = timer_factory

        self.has_error = False
        self.error_text: Optional[str] = None
        self.extractions = 0

        self._timer: Optional[Any] = None
        self._generation = 0
        self._lock = threading.Lock()
        self._listeners: List[MonitorListener] = []
        self._feed: Optional[Feed] = None

    # ========= wiring =========

    def attach(self, feed: Feed) -> None:
        self.detach()
        self._feed = feed
        feed.subscribe(self.observe)

    def detach(self) -> None:
        if self._feed is not None:
            self._feed.unsubscribe(self.observe)
            self._feed = None

    def add_listener(self, listener: MonitorListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as exc:
                log_error(f"build monitor listener failed: {exc}")

    # ========= detection =========

    def observe(self, event: Any) -> None:
        data = event.data if isinstance(event, OutputEvent) else event
        if isinstance(data, str):
            self.observe_text(data)
            return
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return
        self.observe_text(text)

    def _matches(self, text: str) -> bool:
        lowered = text.lower()
        return any(sig in lowered for sig in self._signatures_lower)

    def observe_text(self, text: str) -> None:
        if not text:
            return
        changed = False
        with self._lock:
            if self._matches(text):
                if not self.has_error:
                    self.has_error = True
                    self.error_text = ""
                lines = [line.rstrip() for line in text.splitlines() if self._matches(line)]
                if lines:
                    self.error_text = (self.error_text or "") + "\n".join(lines) + "\n"
                self._schedule_locked()
                changed = True

            if self.success_signature and self.success_signature in text:
                self._clear_locked()
                changed = True
        if changed:
            self._notify()

    def _schedule_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._generation += 1
        timer = self._timer_factory(self.delay, self._on_timer, args=(self._generation,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _clear_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._generation += 1
        self.has_error = False
        self.error_text = None

    # ========= extraction =========

    def extraction_command(self) -> str:
        return extraction_command(self.log_path)

    def copy_command(self) -> str:
        return copy_command(self.log_path)

    def _on_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            self.extractions += 1

        try:
            output = self._execute(self.extraction_command())
        except Exception as exc:
            log_error(f"build error extraction failed: {exc}")
            with self._lock:
                if generation != self._generation:
                    return
                if not self.error_text:
                    self.error_text = ERROR_TEXT_UNAVAILABLE
            self._notify()
            return

        with self._lock:
            if generation != self._generation:
                return
            self.error_text = output.strip() or self.error_text or ERROR_TEXT_UNAVAILABLE
        self._notify()

    def copy_errors(self) -> str:
        try:
            return self._execute(self.copy_command())
        except Exception as exc:
            log_error(f"failed to copy build errors: {exc}")
            return COPY_FALLBACK_TEXT.format(log_path=self.log_path)

    def reset(self) -> None:
        with self._lock:
            was_set = self.has_error or self.error_text is not None
            self._clear_locked()
        if was_set:
            self._notify()
