"""
Bounded in-memory copy of every emitted session event.

Lets tests and local tooling look up what a session (or a single turn, via
its correlation id) reported without parsing stdout. Production ships the
stdout stream to a log aggregator instead.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from .envelope import DEFAULT_PII, ENVELOPE_KEYS


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StoredEvent:
    ts: datetime
    session_id: str
    component: str
    event_type: str
    severity: str
    correlation_id: str
    pii: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_PII))
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_envelope(cls, event: Dict[str, Any]) -> "StoredEvent":
        session_id = event.get("session_id") or ""
        return cls(
            ts=_parse_ts(event.get("ts")),
            session_id=session_id,
            component=event.get("component", "unknown"),
            event_type=event.get("event_type", "unknown"),
            severity=event.get("severity", "info"),
            correlation_id=event.get("correlation_id") or session_id,
            pii=event.get("pii") or dict(DEFAULT_PII),
            payload={k: v for k, v in event.items() if k not in ENVELOPE_KEYS},
        )

    def matches(
        self,
        session_id: Optional[str],
        event_type: Optional[str],
        component: Optional[str],
        correlation_id: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> bool:
        return (
            (not session_id or self.session_id == session_id)
            and (not event_type or self.event_type == event_type)
            and (not component or self.component == component)
            and (not correlation_id or self.correlation_id == correlation_id)
            and (since is None or self.ts >= since)
            and (until is None or self.ts <= until)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts.isoformat(),
            "session_id": self.session_id,
            "component": self.component,
            "event_type": self.event_type,
            "severity": self.severity,
            "correlation_id": self.correlation_id,
            "pii": self.pii,
            **self.payload,
        }


class EventStore:
    """FIFO of the most recent `max_events` events (default 10,000)."""

    def __init__(self, max_events: int = 10000):
        self.max_events = max_events
        self._events: Deque[StoredEvent] = deque(maxlen=max_events)

    def store(self, event: Dict[str, Any]) -> None:
        self._events.append(StoredEvent.from_envelope(event))

    def query(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        correlation_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Matching events as dicts, oldest first.

        All filters are optional and combine with AND; `since` and `until`
        are inclusive.
        """
        found: List[Dict[str, Any]] = []
        for event in self._events:
            if not event.matches(session_id, event_type, component, correlation_id, since, until):
                continue
            found.append(event.to_dict())
            if limit and len(found) >= limit:
                break
        return found

    def turn(self, turn_id: str) -> List[str]:
        """Event types recorded for one turn, in order."""
        return [e["event_type"] for e in self.query(correlation_id=turn_id)]

    def count(self, session_id: Optional[str] = None, event_type: Optional[str] = None) -> int:
        return sum(
            1 for e in self._events
            if e.matches(session_id, event_type, None, None, None, None)
        )

    def clear(self) -> None:
        self._events.clear()

    def get_stats(self) -> Dict[str, Any]:
        oldest = self._events[0].ts.isoformat() if self._events else None
        newest = self._events[-1].ts.isoformat() if self._events else None
        return {
            "total_events": len(self._events),
            "max_events": self.max_events,
            "oldest_event_ts": oldest,
            "newest_event_ts": newest,
        }


# Process-wide store fed by every EventEmitter
event_store = EventStore()
