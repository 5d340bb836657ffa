"""
Observability utilities for BubbLM.
Structured logging and per-session IDs for debugging sandbox launches.
"""
from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(session_id)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class SessionIDFilter(logging.Filter):
    def filter(self, record):
        record.session_id = getattr(logging, "_bubblm_session_id", "no-session")
        return True


logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    """Route log records to stderr; stdout belongs to the sandboxed command."""
    root = logging.getLogger()
    level = logging.DEBUG if verbose else logging.INFO
    for handler in root.handlers:
        if getattr(handler, "_bubblm", False):
            root.setLevel(level)
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    handler.addFilter(SessionIDFilter())
    handler._bubblm = True
    root.addHandler(handler)
    root.setLevel(level)


class SessionContext:
    """Context manager scoping the session ID attached to log records."""

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.old_id = None

    def __enter__(self):
        self.old_id = getattr(logging, "_bubblm_session_id", None)
        logging._bubblm_session_id = self.session_id
        return self

    def __exit__(self, *args):
        if self.old_id:
            logging._bubblm_session_id = self.old_id
        elif hasattr(logging, "_bubblm_session_id"):
            delattr(logging, "_bubblm_session_id")


_REDACT_KEYS = {
    "token",
    "access_token",
    "api_key",
    "authorization",
    "secret",
    "private_key",
    "password",
}


def _redact(obj: Any) -> Any:
    """Best-effort redaction for audit metadata (environment values included)."""
    try:
        if isinstance(obj, dict):
            redacted: dict[str, Any] = {}
            for k, v in obj.items():
                key = str(k).lower()
                if key in _REDACT_KEYS or any(
                    s in key for s in ("token", "secret", "password", "authorization", "api_key")
                ):
                    redacted[k] = "[REDACTED]"
                else:
                    redacted[k] = _redact(v)
            return redacted
        if isinstance(obj, list):
            return [_redact(v) for v in obj]
        if isinstance(obj, tuple):
            return tuple(_redact(v) for v in obj)
        if isinstance(obj, (str, int, float, bool)) or obj is None:
            return obj
        return str(obj)
    except Exception:
        return "[UNSERIALIZABLE]"


def current_session_id() -> str:
    return getattr(logging, "_bubblm_session_id", "no-session")


def log_audit_event(
    action: str,
    result: str,
    *,
    session_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> dict:
    """
    Emit a structured audit log entry.

    - Always writes a JSON line to the log at DEBUG level.
    - Appends the same line to $BUBBLM_AUDIT_LOG when set (best-effort).
    """
    sid = session_id or current_session_id()
    event = {
        "type": "audit",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "session_id": sid,
        "action": str(action),
        "result": str(result),
        "pid": os.getpid(),
        "metadata": _redact(metadata or {}),
    }
    line = json.dumps(event, ensure_ascii=False, sort_keys=True)

    with SessionContext(sid):
        logger.debug(line)

    audit_path = os.getenv("BUBBLM_AUDIT_LOG")
    if audit_path:
        try:
            with open(os.path.expanduser(audit_path), "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.warning("Could not append audit event to %s: %s", audit_path, e)
    return event
