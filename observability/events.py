"""
Structured JSON session-event emission (shared).

Used by the voice session engine and the token service. Every event is one
JSON envelope line on stdout and is also kept in the in-memory event store so
tests and diagnostics can query a session's history.

Transcript text never goes into an event; only lengths.
"""

from __future__ import annotations

import json
import os
import re
import sys
from enum import Enum
from typing import Any, Dict, Optional

from .envelope import build_envelope
from .event_store import event_store


class Component(str, Enum):
    """Event source components."""

    VOICE_SESSION = "voice_session"
    TOKEN_SERVICE = "token_service"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_LATENCY_PATTERN = re.compile(r'("latency_ms"\s*:\s*)(\d+)')


class EventEmitter:
    """Emits structured JSON events."""

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        event = build_envelope(
            self.component.value,
            event_type,
            session_id,
            severity.value,
            correlation_id=correlation_id,
            pii=pii,
            **kwargs,
        )

        json_output = json.dumps(event, ensure_ascii=False, default=str)

        if kwargs.get("latency_ms") is not None:
            no_color = os.environ.get("NO_COLOR", "").lower() in ("1", "true", "yes")
            if no_color:
                replacement = r'\1\2 ms'
            else:
                replacement = rf'\1{self.ORANGE}\2 ms{self.RESET}'
            json_output = _LATENCY_PATTERN.sub(replacement, json_output)

        sys.stdout.write(json_output)
        sys.stdout.write("\n")
        sys.stdout.flush()

        # The store keeps the uncoloured dict.
        event_store.store(event)

    # --- Voice session taxonomy ---

    def connection_state_changed(
        self,
        session_id: str,
        from_state: str,
        to_state: str,
        reason: Optional[str] = None,
    ) -> None:
        severity = Severity.WARN if to_state == "error" else Severity.INFO
        self.emit(
            "connection.state_changed",
            session_id,
            severity=severity,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
        )

    def turn_state_changed(
        self,
        session_id: str,
        from_state: str,
        to_state: str,
        trigger: str,
        turn_id: Optional[str] = None,
    ) -> None:
        self.emit(
            "turn.state_changed",
            session_id,
            severity=Severity.DEBUG,
            correlation_id=turn_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
        )

    def turn_completed(
        self,
        session_id: str,
        turn_id: str,
        user_chars: int,
        assistant_chars: int,
        latency_ms: Optional[int] = None,
    ) -> None:
        self.emit(
            "turn.completed",
            session_id,
            correlation_id=turn_id,
            user_chars=user_chars,
            assistant_chars=assistant_chars,
            latency_ms=latency_ms,
        )

    def turn_aborted(self, session_id: str, turn_id: str, reason: str) -> None:
        self.emit(
            "turn.aborted",
            session_id,
            severity=Severity.WARN,
            correlation_id=turn_id,
            reason=reason,
        )

    def persistence_failed(
        self,
        session_id: str,
        operation: str,
        error_class: str,
        role: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> None:
        self.emit(
            "persistence.failed",
            session_id,
            severity=Severity.ERROR,
            operation=operation,
            role=role,
            conversation_id=conversation_id,
            error_class=error_class,
        )


# Shared emitter for the voice session engine
voice_session_emitter = EventEmitter(Component.VOICE_SESSION)
