"""Unit tests for rich metrics and structured logging context."""

import json
import logging

from pmm_settlement.infra.logging_cfg import (
    JsonFormatter,
    ThrottledFilter,
    TraceIdFilter,
    log_event,
    reset_trace_id,
    set_trace_id,
)
from pmm_settlement.monitoring.metrics_rich import RichMetrics


def _record(msg: str, level: int = logging.WARNING) -> logging.LogRecord:
    return logging.LogRecord("pmm_settlement", level, __file__, 1, msg, None, None)


def test_registries_are_isolated():
    first, second = RichMetrics(), RichMetrics()
    first.rebalances_created.inc()

    assert first.registry.get_sample_value("rebalances_created_total") == 1.0
    assert second.registry.get_sample_value("rebalances_created_total") == 0.0


def test_labelled_counters_and_gauge():
    metrics = RichMetrics()
    metrics.quotes.labels(decision="accepted").inc()
    metrics.quotes.labels(decision="accepted").inc()
    metrics.quotes.labels(decision="rejected").inc()
    metrics.nonce_cache_size.set(3)
    metrics.slippage_bps.observe(120)

    sample = metrics.registry.get_sample_value
    assert sample("swap_quotes_total", {"decision": "accepted"}) == 2.0
    assert sample("swap_quotes_total", {"decision": "rejected"}) == 1.0
    assert sample("nonce_cache_size") == 3.0
    assert sample("swap_slippage_bps_count") == 1.0


def test_json_formatter_includes_trace_id():
    record = _record('{"event": "rebalance_verified"}', logging.INFO)
    token = set_trace_id("sched-pending-abc")
    try:
        TraceIdFilter().filter(record)
    finally:
        reset_trace_id(token)

    payload = json.loads(JsonFormatter().format(record))
    assert payload["trace_id"] == "sched-pending-abc"
    assert payload["level"] == "INFO"
    assert json.loads(payload["msg"]) == {"event": "rebalance_verified"}


def test_throttled_filter_is_keyed_per_record():
    throttle = ThrottledFilter(cooldown_sec=60)
    one = json.dumps({"event": "rebalance_tx_not_found", "rebalancing_id": "RB-1"})
    two = json.dumps({"event": "rebalance_tx_not_found", "rebalancing_id": "RB-2"})

    assert throttle.filter(_record(one))
    assert not throttle.filter(_record(one))
    assert throttle.filter(_record(two))
    assert throttle.filter(_record(json.dumps({"event": "rebalance_complete"})))
    assert throttle.filter(_record("plain text"))


def test_log_event_carries_trace_id():
    captured = []

    class Capture(logging.Handler):
        def emit(self, record):
            captured.append(record.getMessage())

    logger = logging.getLogger("pmm_settlement.test_log_event")
    logger.addHandler(Capture())
    logger.setLevel(logging.INFO)
    token = set_trace_id("sched-swap-1")
    try:
        log_event(logger, "swap_status_received", rebalancing_id="RB-1")
    finally:
        reset_trace_id(token)

    assert json.loads(captured[0]) == {
        "event": "swap_status_received",
        "rebalancing_id": "RB-1",
        "trace_id": "sched-swap-1",
    }
