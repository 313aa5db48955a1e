import json
import math
import os
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from adminshell.config import TOKENS_PER_CHAR

def log_error(message: str) -> None:
    print(f"[adminshell] {message}", file=sys.stderr, flush=True)

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

def utc_iso(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"

def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except OSError as exc:
        log_error(f"log write failed ({path}): {exc}")

def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    sessions_dir = os.path.join(cache_root, "sessions")
    os.makedirs(sessions_dir, exist_ok=True)
    return {
        "cache_root": cache_root,
        "sessions_dir": sessions_dir,
    }

def estimate_tokens(content: Any) -> int:
    # Rough heuristic, not a tokenizer.
    if not isinstance(content, str):
        content = json.dumps(content, ensure_ascii=False, default=str)
    return math.ceil(len(content) * TOKENS_PER_CHAR)

def quote_credential(secret: str) -> str:
    return "'" + secret.replace("'", "'\\''") + "'"

def unquote_credential(quoted: str) -> str:
    """Inverse of quote_credential; used to check the quoting round-trips."""
    if len(quoted) < 2 or not (quoted.startswith("'") and quoted.endswith("'")):
        raise ValueError("not a single-quoted shell word")
    return quoted[1:-1].replace("'\\''", "'")
