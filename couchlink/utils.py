import os
import re
import sys
import json
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional, Union

from couchlink.config import ANSI_CSI, ANSI_OSC, CONTROL_CHARS


def log_error(message: str) -> None:
    print(f"[couchlink] {message}", file=sys.stderr, flush=True)


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default


def clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def as_bytes(payload: Union[str, bytes]) -> bytes:
    if isinstance(payload, bytes):
        return payload
    return payload.encode("utf-8")


def printable(payload: Union[str, bytes]) -> str:
    """Render an outbound payload for logs: Ctrl-C by name, other controls escaped."""
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
    if text == "\x03":
        return "<CTRL+C>"
    text = text.replace("\r", "\\r").replace("\n", "\\n")
    return CONTROL_CHARS.sub(lambda m: f"\\x{ord(m.group(0)):02x}", text)


def strip_ansi(text: str) -> str:
    if not text:
        return ""
    text = ANSI_CSI.sub("", text)
    text = ANSI_OSC.sub("", text)
    return text.replace("\r", "")


def shell_single_quote_escape(value: str) -> str:
    return value.replace("'", "'\"'\"'")


def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    sessions_dir = os.path.join(cache_root, "sessions")
    os.makedirs(sessions_dir, exist_ok=True)
    return {
        "cache_root": cache_root,
        "sessions_dir": sessions_dir,
    }


def resolve_runtime_paths(host: str, cache_dir_arg: Optional[str]) -> Dict[str, str]:
    host_tag = safe_name(host or "local")
    host_hash = hashlib.sha1((host or "").encode("utf-8")).hexdigest()[:8]
    if cache_dir_arg:
        cache_root = os.path.join(os.path.abspath(cache_dir_arg), f"{host_tag}-{host_hash}")
    else:
        cache_root = os.path.join(os.path.expanduser("~"), ".couchlink-cache", f"{host_tag}-{host_hash}")
    return {
        "host_tag": host_tag,
        "cache_root": cache_root,
    }
