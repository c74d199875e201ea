"""Metrics sink abstraction.

Components report counters, gauges and structured events through a
MetricsSink instead of writing to a console or file. Dashboards and alert
channels are built outside the package on top of these sinks.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Tuple


logger = logging.getLogger(__name__)

MAX_RECORDED_EVENTS = 1000


def _metric_key(name: str, tags: Dict[str, Any]) -> str:
    if not tags:
        return name
    rendered = ",".join(f"{key}={tags[key]}" for key in sorted(tags))
    return f"{name}[{rendered}]"


class MetricsSink(ABC):
    """Destination for operational numbers emitted by the core."""

    @abstractmethod
    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        """Increase a counter.

        Args:
            name: Counter name (e.g., 'messages_processed')
            value: Amount to add
            **tags: Optional dimensions such as tenant or key
        """
        pass

    @abstractmethod
    def gauge(self, name: str, value: float, **tags: Any) -> None:
        """Record the current value of a gauge."""
        pass

    @abstractmethod
    def event(self, name: str, **fields: Any) -> None:
        """Record a structured event."""
        pass


class LoggingMetricsSink(MetricsSink):
    """Renders metrics through the standard logging module."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        self._level = level

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        logger.log(self._level, f"counter {_metric_key(name, tags)} +{value}")

    def gauge(self, name: str, value: float, **tags: Any) -> None:
        logger.log(self._level, f"gauge {_metric_key(name, tags)} = {value}")

    def event(self, name: str, **fields: Any) -> None:
        logger.info(f"event {name} {fields}")


class InMemoryMetricsSink(MetricsSink):
    """Keeps metrics in memory for operational tooling and tests."""

    def __init__(self, max_events: int = MAX_RECORDED_EVENTS) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}
        self._events: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=max_events)

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        with self._lock:
            self._counters[_metric_key(name, tags)] += value

    def gauge(self, name: str, value: float, **tags: Any) -> None:
        with self._lock:
            self._gauges[_metric_key(name, tags)] = value

    def event(self, name: str, **fields: Any) -> None:
        payload = dict(fields)
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        with self._lock:
            self._events.append((name, payload))

    def counter(self, name: str, **tags: Any) -> int:
        """Get the current value of a counter, zero when never incremented."""
        with self._lock:
            return self._counters.get(_metric_key(name, tags), 0)

    def gauge_value(self, name: str, **tags: Any):
        with self._lock:
            return self._gauges.get(_metric_key(name, tags))

    def events(self, name: str = None) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            return [item for item in self._events if name is None or item[0] == name]

    def snapshot(self) -> Dict[str, Any]:
        """Get a copy of all counters and gauges."""
        with self._lock:
            return {"counters": dict(self._counters), "gauges": dict(self._gauges)}
