from __future__ import annotations

from stimlink.server import metrics as m
from stimlink.server.metrics import Metrics


def test_snapshot_shapes() -> None:
    metrics = Metrics(window=4)
    metrics.inc(m.SENDS_TOTAL)
    metrics.inc(m.SENDS_TOTAL, 2)
    metrics.set(m.BOUND_ENDPOINTS, 3)
    for value in (5.0, 1.0, 3.0):
        metrics.observe_ms(m.TICK_MS, value)

    snap = metrics.snapshot()
    assert snap["counters"][m.SENDS_TOTAL] == 3
    assert snap["gauges"][m.BOUND_ENDPOINTS] == 3.0
    hist = snap["histograms"][m.TICK_MS]
    assert hist["last_ms"] == 3.0
    assert hist["min_ms"] == 1.0
    assert hist["max_ms"] == 5.0
    assert hist["p50_ms"] == 3.0
    assert metrics.counter("missing") == 0.0
