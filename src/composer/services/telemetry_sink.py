from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional

_logger = logging.getLogger("composer.telemetry")
_metric_logger = logging.getLogger("composer.metrics")


@dataclass
class TelemetryEvent:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    actor: str | None = None
    recorded_at: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "properties": dict(self.properties),
            "actor": self.actor,
            "recorded_at": self.recorded_at,
        }


# Rolling buffer of engine events, read by the diagnostics router
_RECENT_EVENTS: List[TelemetryEvent] = []
_MAX_BUFFER = 200
_LOCK = RLock()


def record_event(event: TelemetryEvent) -> None:
    """Log an engine event and keep it in the in-memory buffer."""

    with _LOCK:
        _RECENT_EVENTS.append(event)
        overflow = len(_RECENT_EVENTS) - _MAX_BUFFER
        if overflow > 0:
            del _RECENT_EVENTS[0:overflow]

    try:
        _logger.info(
            "telemetry_event",
            extra={
                "telemetry_name": event.name,
                "telemetry_actor": event.actor,
                "telemetry_properties": event.properties,
            },
        )
    except Exception:
        pass


def list_recent_events(limit: int = 50, name: Optional[str] = None) -> List[TelemetryEvent]:
    if limit <= 0:
        return []
    with _LOCK:
        events = [e for e in _RECENT_EVENTS if name is None or e.name == name]
    return events[-limit:]


def clear_recent_events() -> None:
    with _LOCK:
        _RECENT_EVENTS.clear()


def routing_summary(events: Iterable[TelemetryEvent]) -> Dict[str, Dict[str, int]]:
    """Tally ``routing_resolved`` events as ``{declared_intent: {outcome: count}}``."""

    tally: Dict[str, Counter] = {}
    for event in events:
        if event.name != "routing_resolved":
            continue
        declared = str(event.properties.get("declared_intent") or "general")
        outcome = str(event.properties.get("outcome") or "unknown")
        tally.setdefault(declared, Counter())[outcome] += 1
    return {intent: dict(counts) for intent, counts in sorted(tally.items())}


def record_metric(
    *,
    name: str,
    value: float,
    properties: Optional[Dict[str, Any]] = None,
    metric_type: str = "gauge",
) -> None:
    """Emit a metric through the ``composer.metrics`` logger.

    Parameters
    ----------
    name: str
        Metric identifier (snake_case preferred).
    value: float
        Numeric value, e.g. the chunk count of a finished stream.
    properties: dict[str, Any] | None
        Additional dimensions (declared_intent, thread_id).
    metric_type: str
        "gauge" (default) or "counter".
    """

    payload = {
        "metric_name": name,
        "metric_value": value,
        "metric_properties": dict(properties or {}),
        "metric_type": metric_type,
    }

    try:
        _metric_logger.info("metric_event", extra=payload)
    except Exception:
        pass
