"""
Lightweight JSON metrics for stimlink.

This module provides a small metrics aggregator that supports:
- counters (monotonic totals)
- gauges (latest value)
- histograms (rolling window with basic stats and percentiles)

All timings are expected in milliseconds by convention (e.g., *_ms).
The aggregator exposes a `snapshot()` that returns a JSON-ready dict.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List

SENDS_TOTAL = "stimlink_sends_total"
SEND_FAILURES = "stimlink_send_failures"
TICKS_TOTAL = "stimlink_ticks_total"
DISPATCHES_TOTAL = "stimlink_dispatches_total"
DISPATCHES_IDLE = "stimlink_dispatches_idle"
DISPATCHES_INTERRUPTED = "stimlink_dispatches_interrupted"
EVENTS_DEBOUNCED = "stimlink_events_debounced"
EVENTS_DROPPED = "stimlink_events_dropped"
EMERGENCY_STOPS = "stimlink_emergency_stops"
EMERGENCY_STOP_FAILURES = "stimlink_emergency_stop_failures"
BOUND_ENDPOINTS = "stimlink_bound_endpoints"
ACTIVE_CONNECTIONS = "stimlink_active_connections"
TICK_MS = "stimlink_tick_ms"


@dataclass
class _Hist:
    window: int
    values: Deque[float] = field(default_factory=deque)
    last: float = 0.0
    count: int = 0
    min_v: float = float("inf")
    max_v: float = float("-inf")

    def observe(self, v: float) -> None:
        self.last = float(v)
        self.values.append(self.last)
        if self.last < self.min_v:
            self.min_v = self.last
        if self.last > self.max_v:
            self.max_v = self.last
        self.count += 1

    def stats(self) -> Dict[str, float]:
        n = len(self.values)
        if n == 0:
            return {
                "last_ms": 0.0,
                "mean_ms": 0.0,
                "p50_ms": 0.0,
                "p90_ms": 0.0,
                "p99_ms": 0.0,
                "min_ms": 0.0,
                "max_ms": 0.0,
            }
        arr: List[float] = sorted(self.values)

        def q(p: float) -> float:
            idx = min(max(int(round(p * (n - 1))), 0), n - 1)
            return arr[idx]

        return {
            "last_ms": self.last,
            "mean_ms": sum(arr) / n,
            "p50_ms": q(0.50),
            "p90_ms": q(0.90),
            "p99_ms": q(0.99),
            "min_ms": self.min_v,
            "max_ms": self.max_v,
        }


class Metrics:
    """Small metrics aggregator with JSON snapshot.

    Host event threads and the event loop both record here, so updates are
    serialised with a lock.
    """

    def __init__(self, window: int = 512) -> None:
        self._window = max(16, int(window))
        self._counters: Dict[str, float] = {}
        self._gauges: Dict[str, float] = {}
        self._hists: Dict[str, _Hist] = {}
        self._lock = threading.Lock()

    def inc(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + float(value)

    def set(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def observe_ms(self, name: str, value_ms: float) -> None:
        with self._lock:
            h = self._hists.get(name)
            if h is None:
                h = _Hist(window=self._window, values=deque(maxlen=self._window))
                self._hists[name] = h
            h.observe(float(value_ms))

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def gauge(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            gauges = {k: float(v) for k, v in self._gauges.items()}
            counters = {k: int(v) if float(v).is_integer() else float(v) for k, v in self._counters.items()}
            hist = {k: v.stats() for k, v in self._hists.items()}
        return {
            "version": "v1",
            "ts": time.time(),
            "gauges": gauges,
            "counters": counters,
            "histograms": hist,
        }


__all__ = ["Metrics"]
