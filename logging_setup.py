"""
Shared logging infrastructure for olive-voice.

Used by the voice session engine and the token service alike:
- one JSON object per line on stdout
- component and session tagging on every record
- PII fields (transcripts, user ids) kept apart from ordinary fields and
  redacted unless LOG_PII is enabled
- latency_ms rendered with its unit
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(str, Enum):
    """Engine and service parts, one per logger."""
    VOICE_SESSION = "voice_session"
    CREDENTIALS = "credentials"
    TRANSPORT = "transport"
    MEDIA = "media"
    DISPATCHER = "dispatcher"
    TURNS = "turns"
    PERSISTENCE = "persistence"
    TOKEN_SERVICE = "token_service"


_TRUTHY = ("1", "true", "yes", "on")

# Present on every LogRecord; anything else arrived through `extra`.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message", "asctime", "component", "session_id", "pii", "taskName",
}

_LATENCY = re.compile(r'("latency_ms"\s*:\s*)(\d+)')


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUTHY


def _use_color() -> bool:
    """NO_COLOR disables, FORCE_COLOR enables, otherwise only on a terminal."""
    if _env_flag("NO_COLOR"):
        return False
    if _env_flag("FORCE_COLOR"):
        return True
    try:
        return sys.stdout.isatty()
    except (AttributeError, OSError):
        return False


def _redact(pii: Dict[str, Any]) -> Dict[str, Any]:
    if _env_flag("LOG_PII"):
        return pii
    return {key: f"<redacted:{len(str(value))}>" for key, value in pii.items()}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Keys: timestamp (ISO-8601, UTC, from the record), severity, component,
    message, session_id when bound, any extra fields, pii when given and
    exception when attached.
    """

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", record.name),
            "message": record.getMessage(),
        }
        session_id = getattr(record, "session_id", None)
        if session_id:
            entry["session_id"] = session_id

        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _STANDARD_ATTRS
        )

        pii = getattr(record, "pii", None)
        if pii:
            entry["pii"] = _redact(pii)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        line = json.dumps(entry, ensure_ascii=False, default=str)
        if "latency_ms" not in entry:
            return line

        unit = rf'\1{self.ORANGE}\2 ms{self.RESET}' if _use_color() else r'\1\2 ms'
        return _LATENCY.sub(unit, line)


class StructuredLogger:
    """
    Structured logger bound to a component and, optionally, a session.

    Usage:
        logger = get_logger(Component.TRANSPORT).with_session("vs_123")
        logger.info("Transport connecting", model="gpt-4o-realtime")
        logger.debug_pii("User transcript (final)", transcript="...")
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        logger_name: Optional[str] = None,
        **bound: Any,
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.bound = bound
        self.logger = logging.getLogger(logger_name or self.component)

    def _log(self, level: int, message: str, pii: Optional[Dict[str, Any]] = None, **fields):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = fields.pop("exc_info", None)
        extra = {"component": self.component, **self.bound, **fields}
        if self.session_id:
            extra["session_id"] = self.session_id
        if pii:
            extra["pii"] = pii
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, **fields):
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields):
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields):
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields):
        self._log(logging.ERROR, message, **fields)

    def critical(self, message: str, **fields):
        self._log(logging.CRITICAL, message, **fields)

    def exception(self, message: str, **fields):
        """Error with the exception being handled attached."""
        fields.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **fields)

    def debug_pii(self, message: str, **pii_fields):
        """Debug record whose fields are all PII (e.g. transcript=...)."""
        self._log(logging.DEBUG, message, pii=pii_fields)

    def info_pii(self, message: str, **pii_fields):
        self._log(logging.INFO, message, pii=pii_fields)

    def bind(self, **fields) -> "StructuredLogger":
        """Logger that adds `fields` to every record."""
        return StructuredLogger(
            self.component,
            session_id=self.session_id,
            logger_name=self.logger.name,
            **{**self.bound, **fields},
        )

    def with_session(self, session_id: str) -> "StructuredLogger":
        """Logger bound to a session ID."""
        return StructuredLogger(
            self.component,
            session_id=session_id,
            logger_name=self.logger.name,
            **self.bound,
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure the root logger once at process start.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        use_json: JSON lines (True) or plain text (False)
        include_timestamp: prefix plain text lines with a timestamp
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if use_json:
        formatter: logging.Formatter = JSONFormatter()
    else:
        fmt = "%(levelname)s - %(name)s - %(message)s"
        formatter = logging.Formatter(f"%(asctime)s - {fmt}" if include_timestamp else fmt)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(log_level)

    # aiortc/aioice log every ICE check at DEBUG.
    if log_level > logging.DEBUG:
        for name in ("aiortc", "aioice"):
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(component: str | Component, session_id: Optional[str] = None) -> StructuredLogger:
    """Structured logger for a component, optionally bound to a session."""
    return StructuredLogger(component, session_id=session_id)
