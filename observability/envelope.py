"""Shape of a session event envelope."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}

# Keys every event carries; anything else is event-specific payload.
ENVELOPE_KEYS = frozenset(
    ("ts", "session_id", "component", "event_type", "severity", "correlation_id", "pii")
)


def build_envelope(
    component: str,
    event_type: str,
    session_id: str,
    severity: str,
    correlation_id: Optional[str] = None,
    pii: Optional[Dict[str, Any]] = None,
    **payload: Any,
) -> Dict[str, Any]:
    event = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "session_id": session_id,
        "component": component,
        "event_type": event_type,
        "severity": severity,
        "correlation_id": correlation_id or session_id,
        "pii": pii or dict(DEFAULT_PII),
    }
    event.update(payload)
    return event
