"""
In-memory activity log for engine events (ticket routed, anomaly detected, sweep finished).
The worker publishes events via Redis pub/sub; the API subscribes in a background thread.
Publishing is fire-and-forget: callers never wait on delivery and failures are only logged.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from queue_engine.config import REDIS_URL
from queue_engine.models import Anomaly

logger = logging.getLogger(__name__)

ACTIVITY_CHANNEL = "queue_engine_activity"
MAX_EVENTS = 200


@dataclass
class ActivityEvent:
    """A single engine activity event."""

    ts: float = field(default_factory=time.time)
    type: str = ""
    data: dict[str, Any] = field(default_factory=dict)


_events: list[ActivityEvent] = []
_lock = threading.Lock()


def emit(event_type: str, data: dict[str, Any] | None = None) -> None:
    """Append an event to the local activity log."""
    with _lock:
        _events.append(ActivityEvent(type=event_type, data=data or {}))
        while len(_events) > MAX_EVENTS:
            _events.pop(0)


def get_recent(limit: int = 100) -> list[dict]:
    """Most recent events (newest last) as dicts with ts, type, data."""
    with _lock:
        return [{"ts": e.ts, "type": e.type, "data": e.data} for e in _events[-limit:]]


def clear() -> None:
    with _lock:
        _events.clear()


def _redis_subscriber_thread() -> None:
    """Daemon thread: subscribe to the activity channel and append worker events."""
    try:
        import redis

        r = redis.from_url(REDIS_URL, decode_responses=True)
        pubsub = r.pubsub()
        pubsub.subscribe(ACTIVITY_CHANNEL)
        logger.info("Activity subscriber listening on channel %s", ACTIVITY_CHANNEL)
        for message in pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                payload = json.loads(message["data"])
                emit(payload.get("type", "event"), payload.get("data", {}))
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning("Activity message parse error: %s", e)
    except Exception as e:
        logger.warning("Activity Redis subscriber stopped: %s", e)


def start_redis_subscriber() -> None:
    t = threading.Thread(target=_redis_subscriber_thread, daemon=True)
    t.start()


def publish_event(event_type: str, data: dict[str, Any]) -> None:
    """Publish an event to Redis for API subscribers. Never raises."""
    try:
        import redis

        r = redis.from_url(REDIS_URL, decode_responses=True)
        r.publish(ACTIVITY_CHANNEL, json.dumps({"type": event_type, "data": data}))
    except Exception as e:
        logger.warning("Activity publish failed: %s", e)


def anomaly_event_data(anomaly: Anomaly) -> dict[str, Any]:
    return {
        "anomaly_id": anomaly.anomaly_id,
        "organization_id": anomaly.organization_id,
        "anomaly_type": anomaly.anomaly_type.value,
        "severity": anomaly.severity.value,
        "metric_value": round(anomaly.metric_value, 3),
    }


def publish_anomaly(anomaly: Anomaly) -> None:
    """Notifier for the worker sweep: broadcast to API processes."""
    publish_event("anomaly_detected", anomaly_event_data(anomaly))


def emit_anomaly(anomaly: Anomaly) -> None:
    """Notifier for sweeps run inside the API process."""
    emit("anomaly_detected", anomaly_event_data(anomaly))
