"""Notifications flowing between the transport, the core and observers.

The transport owns connection state and reports what it observes as
:class:`TransportEvent` values. The orchestrator folds those into its health
state and republishes :class:`StatusUpdate` values to a single
:class:`EventSink`. Neither direction mutates binding membership.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class TransportEventKind(str, Enum):
    CONNECTED = "endpoint.connected"
    DISCONNECTED = "endpoint.disconnected"
    ENDPOINT_ERROR = "endpoint.error"
    CHANNEL_ERROR = "channel.error"
    BIND_SUCCEEDED = "bind.succeeded"
    BIND_FAILED = "bind.failed"


@dataclass(frozen=True)
class TransportEvent:
    kind: TransportEventKind
    endpoint_id: Optional[str] = None
    detail: str = ""
    address: Optional[str] = None
    ts: float = field(default_factory=time.time)


TransportEventCallback = Callable[[TransportEvent], None]


@dataclass(frozen=True)
class StatusUpdate:
    """A state transition or observed transport event, as seen by the core."""

    state: str
    reason: str
    active_connections: int = 0
    bound_endpoints: int = 0
    event: Optional[TransportEvent] = None


class EventSink(Protocol):
    def publish(self, update: StatusUpdate) -> None: ...


def _short(identity: Optional[str]) -> str:
    if not identity:
        return "-"
    return identity[:8] + "..."


class LoggingEventSink:
    """Default sink: writes every update to the ``stimlink`` log."""

    def __init__(self, log: Optional[logging.Logger] = None, *, verbose: bool = False) -> None:
        self._log = log or logger
        self._verbose = verbose

    def publish(self, update: StatusUpdate) -> None:
        event = update.event
        if event is None:
            self._log.info(
                "orchestrator %s (%s) connections=%d bound=%d",
                update.state,
                update.reason,
                update.active_connections,
                update.bound_endpoints,
            )
            return
        if event.kind is TransportEventKind.CHANNEL_ERROR:
            self._log.error("control channel error: %s", event.detail)
        elif event.kind is TransportEventKind.ENDPOINT_ERROR:
            self._log.warning("endpoint error endpoint=%s: %s", _short(event.endpoint_id), event.detail)
        elif event.kind is TransportEventKind.BIND_FAILED:
            self._log.warning("bind failed endpoint=%s: %s", _short(event.endpoint_id), event.detail)
        elif event.kind is TransportEventKind.CONNECTED:
            self._log.info("endpoint connected id=%s from %s", _short(event.endpoint_id), event.address or "?")
        elif self._verbose:
            self._log.info("%s endpoint=%s %s", event.kind.value, _short(event.endpoint_id), event.detail)
        else:
            self._log.debug("%s endpoint=%s %s", event.kind.value, _short(event.endpoint_id), event.detail)


__all__ = [
    "EventSink",
    "LoggingEventSink",
    "StatusUpdate",
    "TransportEvent",
    "TransportEventCallback",
    "TransportEventKind",
]
