import os
import re
import sys
import json
import time
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional, List, Tuple
from remote_terminal.config import (
    ANSI_ESCAPE, CONTROL_CHARS, MAX_PARTIAL_ESCAPE, MAX_READ_MAX_LINES, DEFAULT_SSH_PORT, config
)

def log_error(message: str) -> None:
    print(f"[REMOTE-TERM] {message}", file=sys.stderr, flush=True)

def log_debug(message: str) -> None:
    if config.DEBUG:
        print(f"[REMOTE-TERM] debug: {message}", file=sys.stderr, flush=True)

def clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        numeric = float(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric

def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric

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

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

def now_ms() -> int:
    return int(time.time() * 1000)

def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"

def strip_terminal_noise(chunk: str) -> str:
    """Remove escape sequences and control bytes from a received chunk.

    Applied per chunk so the accumulated buffer only ever grows.
    """
    if not chunk:
        return ""
    chunk = ANSI_ESCAPE.sub("", chunk)
    chunk = CONTROL_CHARS.sub("", chunk)
    return chunk.replace("\r\n", "\n").replace("\r", "\n")

def split_partial_escape(text: str) -> Tuple[str, str]:
    """Split off a trailing escape sequence that has not been terminated yet.

    Returns ``(ready, held)``; ``held`` is prepended to the next chunk.
    """
    start = text.rfind("\x1b")
    if start == -1:
        return text, ""
    tail = text[start:]
    if ANSI_ESCAPE.match(tail) or len(tail) > MAX_PARTIAL_ESCAPE:
        return text, ""
    return text[:start], tail

def parse_host_port(host: str) -> Tuple[str, int]:
    if ":" in host:
        hostname, _, port_text = host.partition(":")
        return hostname, clamp_int(port_text, DEFAULT_SSH_PORT, 1, 65535)
    return host, DEFAULT_SSH_PORT

def split_user_host(host: str, default_user: str) -> Tuple[str, str]:
    # "user@hostname[:port]" carries its own user
    if "@" in host:
        user, _, rest = host.partition("@")
        return (user or default_user), rest
    return default_user, host

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

def resolve_runtime_paths(
    project_root_arg: Optional[str],
    cache_dir_arg: Optional[str],
) -> Dict[str, str]:
    project_root = os.path.abspath(project_root_arg or os.getcwd())
    project_tag = safe_name(os.path.basename(project_root))
    project_hash = hashlib.sha1(project_root.encode("utf-8")).hexdigest()[:8]
    project_ns = f"{project_tag}-{project_hash}"
    cache_override = cache_dir_arg or os.environ.get("REMOTE_TERMINAL_CACHE_DIR")
    if cache_override:
        cache_root = os.path.join(os.path.abspath(cache_override), project_ns)
    else:
        cache_root = os.path.join(project_root, ".terminal-cache")
    return {
        "project_root": project_root,
        "project_tag": project_tag,
        "cache_root": cache_root,
    }

def apply_text_filters(
    lines: List[Dict[str, Any]],
    contains: Optional[str] = None,
    regex: Optional[str] = None,
    tail_lines: Optional[int] = None,
) -> Dict[str, Any]:
    filtered = False
    if contains:
        lines = [line for line in lines if contains in line.get("content", "")]
        filtered = True
    if regex:
        try:
            compiled = re.compile(regex)
        except re.error as exc:
            return {
                "success": False,
                "error": f"invalid regex: {exc}",
                "filtered": False,
                "matched_lines": 0,
                "lines": [],
            }
        lines = [line for line in lines if compiled.search(line.get("content", ""))]
        filtered = True
    if tail_lines is not None:
        tail = clamp_int(tail_lines, 100, 1, MAX_READ_MAX_LINES)
        lines = lines[-tail:]
        filtered = True
    return {
        "success": True,
        "filtered": filtered,
        "matched_lines": len(lines),
        "lines": lines,
    }
