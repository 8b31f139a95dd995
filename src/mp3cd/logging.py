from __future__ import annotations
import enum
import sys
import uuid
from typing import Optional, Any, Dict
from loguru import logger

_configured = False

def setup_console(level: str = "INFO") -> None:
    global _configured
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), enqueue=True, backtrace=False, diagnose=False)
    _configured = True

def setup_json(path: str, level: str = "DEBUG") -> None:
    logger.add(path, level=level.upper(), serialize=True, enqueue=True)

def configure(level: str = "INFO", json_path: Optional[str] = None) -> None:
    """Human console sink plus an optional JSON lines file for structured events."""
    setup_console(level)
    if json_path:
        setup_json(json_path)

def bind_run(run_id: Optional[str] = None) -> str:
    rid = run_id or str(uuid.uuid4())
    # Use configure to apply extra fields to all loggers.
    logger.configure(extra={"run_id": rid})
    return rid

def log_event(action: str, **fields: Any) -> None:
    # Strip None; enums and paths go out as plain strings
    clean: Dict[str, Any] = {k: _plain(v) for k, v in fields.items() if v is not None}
    msg = clean.pop("msg", action)
    level = clean.pop("level", "INFO").upper()
    logger.bind(action=action, **clean).log(level, msg)


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def truncate(text: str, max_len: int = 4096, max_lines: int = 20) -> str:
    """Truncate a string to a max length and/or max number of lines."""
    if not text:
        return ""
    # Limit lines first
    lines = text.strip().splitlines()
    if len(lines) > max_lines:
        text = "\n".join(["... (truncated)"] + lines[-max_lines:])

    # Then limit length
    if len(text) > max_len:
        text = "... (truncated)\n" + text[-max_len:]
    return text
