"""Observability helpers: logging, metrics, and health checks."""

from .logging_config import configure_logging
from .metrics import (
    increment_counter,
    counter_value,
    set_gauge,
    observe_latency,
    timed,
    record_event,
    recent_events,
    get_metrics_snapshot,
)
from .health import check_database_health

__all__ = [
    "configure_logging",
    "increment_counter",
    "counter_value",
    "set_gauge",
    "observe_latency",
    "timed",
    "record_event",
    "recent_events",
    "get_metrics_snapshot",
    "check_database_health",
]
