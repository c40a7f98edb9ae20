import io
import sys
import json
import argparse
import threading
from typing import Any, Dict, List, Optional

from couchlink.config import DEFAULT_ERROR_DEBOUNCE, config
from couchlink.errors import ConfigError
from couchlink.utils import clamp_float, log_error, make_cache_dirs, resolve_runtime_paths

# Force UTF-8 I/O; stdout carries only protocol lines.
_stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
_stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)
_stdout_lock = threading.Lock()


def _write_response(response: Dict[str, Any]) -> None:
    """Write one JSON line to stdout; safe to call from session threads."""
    with _stdout_lock:
        try:
            _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
            _stdout.flush()
        except Exception as exc:
            log_error(f"response write error: {exc}")
            try:
                _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
                _stdout.flush()
            except Exception as exc2:
                log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="couchlink: persistent per-project SSH shell sessions driven over JSON lines on stdio"
    )
    parser.add_argument("--host", help="SSH host (overrides SSH_HOST env)")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--user", help="SSH username (overrides SSH_USERNAME env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_PRIVATE_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for the private key (overrides SSH_PRIVATE_KEY_PASSPHRASE env)")
    parser.add_argument("--no-verify-host", action="store_true", help="Accept host keys missing from known_hosts")
    parser.add_argument("--projects", help="Remote base directory of projects (overrides PROJECTS_BASE_PATH env)")
    parser.add_argument("--agent", help="Default agent: codex or cursor-agent (overrides DEFAULT_AGENT env)")
    parser.add_argument("--debounce", type=float, help="Seconds to wait after the last build failure before extracting errors")
    parser.add_argument("--cache-dir", help="Directory for per-session audit logs")
    return parser


def apply_args(args: argparse.Namespace) -> None:
    if args.host: config.SSH_HOST = args.host
    if args.port: config.SSH_PORT = args.port
    if args.user: config.SSH_USERNAME = args.user
    if args.key: config.SSH_PRIVATE_KEY_PATH = args.key
    if args.passphrase: config.SSH_PRIVATE_KEY_PASSPHRASE = args.passphrase
    if args.no_verify_host: config.SSH_VERIFY_HOST_KEY = False
    if args.projects: config.PROJECTS_BASE_PATH = args.projects
    if args.agent: config.DEFAULT_AGENT = args.agent.lower()
    if args.debounce is not None: config.BUILD_ERROR_DEBOUNCE = clamp_float(args.debounce, DEFAULT_ERROR_DEBOUNCE, 0.0, 60.0)
    if args.cache_dir: config.CACHE_DIR = args.cache_dir


def main(argv: Optional[List[str]] = None) -> None:
    from couchlink.server import ControllerHub, handle_request, make_error
    from couchlink.session import SessionManager

    parser = build_parser()
    try:
        config.load_from_env()
    except ConfigError as exc:
        parser.error(str(exc))

    args = parser.parse_args(argv)
    apply_args(args)

    problems = config.validate()
    if problems:
        parser.error("; ".join(problems))

    cache_dirs = None
    if config.CACHE_DIR:
        runtime_paths = resolve_runtime_paths(config.SSH_HOST, config.CACHE_DIR)
        cache_dirs = make_cache_dirs(runtime_paths["cache_root"])

    manager = SessionManager(config, cache_dirs=cache_dirs, connect_in_background=True)
    hub = ControllerHub(manager, config, notify=_write_response)

    log_error(
        f"couchlink started for {config.SSH_HOST}:{config.SSH_PORT}. "
        f"projects={config.PROJECTS_BASE_PATH or '-'} agent={config.DEFAULT_AGENT} "
        f"verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    for line in _stdin:
        line = line.strip()
        if not line:
            continue
        req_id = None
        try:
            request = json.loads(line)
            if not isinstance(request, dict):
                raise ValueError("request must be a JSON object")
            req_id = request.get("id")
            response = handle_request(request, hub)
            if response is not None:
                _write_response(response)
        except (json.JSONDecodeError, ValueError) as exc:
            log_error(f"invalid request: {exc}")
            _write_response(make_error(req_id, -32700, f"Invalid request: {exc}"))
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            _write_response(make_error(req_id, -32603, f"Internal error: {exc}"))

    log_error("shutting down...")
    hub.close_all()


if __name__ == "__main__":
    main()
