import threading
from typing import Any, Callable, Dict, Optional

from couchlink.config import MAX_TEXT_BUFFER_CHARS, AppConfig
from couchlink.controller import SessionController
from couchlink.errors import CouchlinkError
from couchlink.models import Project, StateSnapshot
from couchlink.session import SessionManager
from couchlink.utils import log_error, strip_ansi, to_bool

Notifier = Callable[[Dict[str, Any]], None]


class ControllerHub:
    """Maps project names to controllers and buffers each project's text feed."""

    def __init__(
        self,
        manager: SessionManager,
        app_config: AppConfig,
        notify: Optional[Notifier] = None,
        max_text_chars: int = MAX_TEXT_BUFFER_CHARS,
        timer_factory: Optional[Callable[..., Any]] = None,
    ):
        self.manager = manager
        self.config = app_config
        self.notify = notify
        self.max_text_chars = max_text_chars
        self.timer_factory = timer_factory

        self.controllers: Dict[str, SessionController] = {}
        self.text_buffers: Dict[str, str] = {}
        self.lock = threading.Lock()

    def resolve(self, name: str) -> Project:
        if not name or not str(name).strip():
            raise CouchlinkError("project is required")
        return Project.under(self.config.PROJECTS_BASE_PATH, str(name).strip())

    def controller_for(self, name: str) -> SessionController:
        project = self.resolve(name)
        with self.lock:
            controller = self.controllers.get(project.id)
            if controller is not None:
                return controller
            kwargs: Dict[str, Any] = {}
            if self.timer_factory is not None:
                kwargs["timer_factory"] = self.timer_factory
            controller = SessionController(self.manager, project, self.config, **kwargs)
            self.controllers[project.id] = controller
            self.text_buffers[project.id] = ""
        controller.session.text_feed.subscribe(lambda text, pid=project.id: self._append_text(pid, text))
        controller.add_listener(self._on_snapshot)
        return controller

    def _append_text(self, project_id: str, text: str) -> None:
        with self.lock:
            buffered = self.text_buffers.get(project_id, "") + text
            overflow = len(buffered) - self.max_text_chars
            if overflow > 0:
                buffered = buffered[overflow:]
            self.text_buffers[project_id] = buffered

    def take_text(self, name: str) -> str:
        project = self.resolve(name)
        with self.lock:
            text = self.text_buffers.get(project.id, "")
            self.text_buffers[project.id] = ""
        return text

    def _on_snapshot(self, snapshot: StateSnapshot) -> None:
        if self.notify is None:
            return
        try:
            self.notify({"jsonrpc": "2.0", "method": "state", "params": snapshot.to_dict()})
        except Exception as exc:
            log_error(f"state notification failed: {exc}")

    def close(self, name: str) -> Dict[str, Any]:
        project = self.resolve(name)
        with self.lock:
            controller = self.controllers.pop(project.id, None)
            self.text_buffers.pop(project.id, None)
        if controller is None:
            return self.manager.close_session(project.id)
        controller.close()
        return {"success": True, "message": f"Session for {project.name} closed"}

    def close_all(self) -> None:
        with self.lock:
            controllers = list(self.controllers.values())
            self.controllers.clear()
            self.text_buffers.clear()
        for controller in controllers:
            controller.close()
        self.manager.close_all()


def make_response(req_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def _snapshot_result(controller: SessionController, **extra: Any) -> Dict[str, Any]:
    result = {"success": True}
    result.update(controller.snapshot().to_dict())
    result.update(extra)
    return result


def _require_text(params: Dict[str, Any], key: str = "text") -> str:
    value = params.get(key)
    if not isinstance(value, str):
        raise CouchlinkError(f"'{key}' must be a string")
    return value


def handle_request(request: Dict[str, Any], hub: ControllerHub) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params") or {}
    req_id = request.get("id")

    if method == "sessions":
        return make_response(req_id, hub.manager.list_sessions())

    project = params.get("project")
    try:
        if method == "close":
            return make_response(req_id, hub.close(project))

        controller = hub.controller_for(project)
        if method == "start":
            controller.start()
            result = _snapshot_result(controller)
        elif method == "connect":
            controller.connect()
            result = _snapshot_result(controller)
        elif method == "state":
            result = _snapshot_result(controller)
        elif method == "send_line":
            controller.send_line(_require_text(params))
            result = _snapshot_result(controller)
        elif method == "send_raw":
            controller.send_raw(_require_text(params))
            result = _snapshot_result(controller)
        elif method == "paste":
            pasted = controller.paste(params.get("text"))
            result = _snapshot_result(controller, pasted=pasted)
        elif method == "send_control":
            controller.send_control(_require_text(params, "key"))
            result = _snapshot_result(controller)
        elif method == "send_canned":
            controller.send_canned(_require_text(params, "kind"))
            result = _snapshot_result(controller)
        elif method == "set_agent":
            controller.set_agent(_require_text(params, "agent"))
            result = _snapshot_result(controller, agent=controller.agent.value)
        elif method == "set_mode":
            controller.set_mode(_require_text(params, "mode"))
            result = _snapshot_result(controller)
        elif method == "copy_errors":
            result = {"success": True, "text": controller.copy_errors()}
        elif method == "read_text":
            text = hub.take_text(project)
            if to_bool(params.get("plain"), False):
                text = strip_ansi(text)
            result = {"success": True, "text": text}
        else:
            return make_error(req_id, -32601, f"Unknown method: {method}")
    except (CouchlinkError, ValueError) as exc:
        return make_response(req_id, {"success": False, "error": str(exc)})
    return make_response(req_id, result)
