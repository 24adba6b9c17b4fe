import json
import logging

from groupbuy.observability.logging_config import JsonFormatter
from groupbuy.observability.metrics import (
    counter_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    recent_events,
    reset_metrics,
    set_gauge,
    timed,
)


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("test_counter")
    increment_counter("test_counter", amount=2, labels={"route": "/example"})
    set_gauge("test_gauge", 5)
    observe_latency("test_latency", 100, labels={"route": "/example"})
    observe_latency("test_latency", 50, labels={"route": "/example"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["test_counter"]
    assert len(counters) == 2
    assert counter_value("test_counter", {"route": "/example"}) == 2

    gauges = snapshot["gauges"]["test_gauge"]
    assert gauges[0]["value"] == 5

    hist = snapshot["histograms"]["test_latency"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100


def test_timed_records_latency_even_on_error():
    try:
        with timed("gateway_call_ms", labels={"operation": "create"}):
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    hist = get_metrics_snapshot()["histograms"]["gateway_call_ms"][0]
    assert hist["labels"] == {"operation": "create"}
    assert hist["stats"]["count"] == 1


def test_event_ring_is_bounded():
    for i in range(250):
        record_event("tick", {"i": i})

    events = recent_events("tick")
    assert len(events) == 200
    assert events[0]["payload"]["i"] == 50


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("groupbuy.test", logging.INFO, __file__, 1, "Checkout %s opened", (7,), None)
    record.discount_percentage = "10"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Checkout 7 opened"
    assert payload["context"] == {"discount_percentage": "10"}
