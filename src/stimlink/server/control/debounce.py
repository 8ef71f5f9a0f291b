"""Per-event-class debouncing for bursty host events."""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, Mapping, Optional


class EventClass(str, Enum):
    DAMAGE = "damage"
    DEATH = "death"


DEFAULT_WINDOWS_MS: dict[EventClass, float] = {EventClass.DAMAGE: 1000.0}


class EventDebouncer:
    """Accept at most one event per class within that class's window.

    Classes without a window (death) are always accepted. Rejected events are
    dropped, never queued. Check-and-update happens under one lock so two
    producer threads racing on the same class cannot both pass.
    """

    def __init__(
        self,
        windows_ms: Optional[Mapping[EventClass, float]] = None,
        *,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        source = DEFAULT_WINDOWS_MS if windows_ms is None else windows_ms
        self._windows_s = {EventClass(k): max(0.0, float(v)) / 1000.0 for k, v in source.items()}
        self._time_fn = time_fn
        self._last: dict[EventClass, float] = {}
        self._lock = threading.Lock()

    def window_ms(self, event_class: EventClass) -> Optional[float]:
        window = self._windows_s.get(EventClass(event_class))
        return None if window is None else window * 1000.0

    def should_accept(self, event_class: EventClass, now: Optional[float] = None) -> bool:
        event_class = EventClass(event_class)
        window = self._windows_s.get(event_class)
        if window is None:
            return True
        ts = self._time_fn() if now is None else float(now)
        with self._lock:
            last = self._last.get(event_class)
            if last is not None and ts - last < window:
                return False
            self._last[event_class] = ts
            return True

    def last_accepted(self, event_class: EventClass) -> Optional[float]:
        with self._lock:
            return self._last.get(EventClass(event_class))


__all__ = ["DEFAULT_WINDOWS_MS", "EventClass", "EventDebouncer"]
