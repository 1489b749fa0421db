"""Logging setup and the in-process telemetry buffer.

Every event is logged and kept in a bounded buffer so pollers and tests can
follow a session: stage transitions, director attempts, unit outcomes and
rate-limit waits.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Mapping

import logging

from .config import settings

ROOT_LOGGER = "moment_studio"


def configure_logging(level: str = "INFO") -> None:
    """Configure standard logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


configure_logging(settings.log_level)


def get_logger(name: str | None = None) -> logging.Logger:
    """The package logger, or a child of it such as ``moment_studio.telemetry``."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


@dataclass(slots=True)
class TelemetryEvent:
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def session_id(self) -> str | None:
        return self.attributes.get("session_id")


class TelemetryStore:
    """Bounded buffer of recent events, queryable per session."""

    def __init__(self, max_events: int = 1000) -> None:
        self._events: deque[TelemetryEvent] = deque(maxlen=max_events)
        self._lock = Lock()

    def record(self, event: TelemetryEvent) -> None:
        with self._lock:
            self._events.append(event)

    def _select(self, name: str | None, session_id: str | None) -> list[TelemetryEvent]:
        with self._lock:
            events = list(self._events)
        if name:
            events = [evt for evt in events if evt.name == name]
        if session_id:
            events = [evt for evt in events if evt.session_id == session_id]
        return events

    def list_events(
        self, *, limit: int = 50, name: str | None = None, session_id: str | None = None
    ) -> list[TelemetryEvent]:
        return self._select(name, session_id)[-limit:]

    def stats(self, *, session_id: str | None = None) -> dict[str, Any]:
        """Event counts plus the ordered stage timeline, for one session or all."""
        events = self._select(None, session_id)
        counts = Counter(evt.name for evt in events)
        timeline = [
            (evt.attributes.get("source"), evt.attributes.get("target"))
            for evt in events
            if evt.name == "stage_transition"
        ]
        return {
            "total_events": len(events),
            "events_by_name": dict(counts),
            "stage_timeline": timeline,
            "last_event_at": events[-1].timestamp if events else None,
        }

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


telemetry_store = TelemetryStore()


def emit_event(event: TelemetryEvent) -> None:
    get_logger("telemetry").info("%s %s", event.name, dict(event.attributes))
    telemetry_store.record(event)
