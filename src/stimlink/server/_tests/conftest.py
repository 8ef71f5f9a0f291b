from __future__ import annotations

import asyncio
from typing import Callable, Iterable, Optional

import pytest

from stimlink.server.control.dispatch import DispatchRequest
from stimlink.server.control.events import TransportEvent
from stimlink.server.control.transport import Channel, CommandKind, StimCommand

CONTROLLER_ID = "controller-0000-0000"


class FakeTransport:
    """In-memory transport that records every send."""

    def __init__(self, endpoints: Iterable[str] = (), *, controller_id: str = CONTROLLER_ID) -> None:
        self._controller_id: Optional[str] = None
        self._assigned_id = controller_id
        self._port: Optional[int] = None
        self.connected: set[str] = set(endpoints)
        self.bound: set[str] = set(endpoints)
        self.sends: list[tuple[str, Channel, StimCommand]] = []
        self.timeline: list[tuple[str, CommandKind]] = []
        self.fail: Callable[[str, Channel, StimCommand], bool] = lambda *_: False
        self.raise_for: set[str] = set()
        self.delay_s = 0.0
        self.channel_delay_s: dict[Channel, float] = {}
        self.done_channels: list[Channel] = []
        self.on_send: Optional[Callable[[str, Channel, StimCommand], None]] = None
        self.start_error: Optional[BaseException] = None
        self.callback = None
        self.listening = False
        self.stop_calls = 0

    @property
    def controller_id(self) -> Optional[str]:
        return self._controller_id

    @property
    def port(self) -> Optional[int]:
        return self._port

    def listen_now(self, port: int = 9999) -> None:
        self._controller_id = self._assigned_id
        self._port = port
        self.listening = True

    async def start_listening(self, port: int) -> str:
        if self.start_error is not None:
            raise self.start_error
        self.listen_now(port)
        return self._assigned_id

    async def stop_listening(self) -> None:
        self.stop_calls += 1
        self.listening = False

    async def send_to(self, endpoint_id: str, channel: Channel, command: StimCommand) -> bool:
        self.sends.append((endpoint_id, channel, command))
        self.timeline.append(("start", command.kind))
        if self.on_send is not None:
            self.on_send(endpoint_id, channel, command)
        delay = self.channel_delay_s.get(channel, self.delay_s)
        if delay:
            await asyncio.sleep(delay)
        self.timeline.append(("done", command.kind))
        self.done_channels.append(channel)
        if endpoint_id in self.raise_for:
            raise RuntimeError(f"socket for {endpoint_id} exploded")
        return not self.fail(endpoint_id, channel, command)

    def list_connected_endpoints(self) -> frozenset[str]:
        return frozenset(self.connected)

    def list_bound_endpoints(self, controller_id: str) -> frozenset[str]:
        if controller_id != self._controller_id:
            return frozenset()
        return frozenset(self.bound)

    def active_connection_count(self) -> int:
        return len(self.connected)

    def set_event_callback(self, callback) -> None:
        self.callback = callback

    def emit(self, event: TransportEvent) -> None:
        assert self.callback is not None
        self.callback(event)

    def pulses(self) -> list[tuple[str, Channel, StimCommand]]:
        return [s for s in self.sends if s[2].kind is CommandKind.PULSE]


class _FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self._now = float(start)

    def advance(self, delta: float) -> None:
        self._now += float(delta)

    def __call__(self) -> float:
        return self._now


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    def factory(endpoints: Iterable[str] = (), *, listening: bool = True) -> FakeTransport:
        transport = FakeTransport(endpoints)
        if listening:
            transport.listen_now()
        return transport

    return factory


@pytest.fixture
def fake_clock() -> _FakeClock:
    return _FakeClock()


@pytest.fixture
def fast_ticks(monkeypatch: pytest.MonkeyPatch) -> float:
    interval = 0.01
    monkeypatch.setattr(DispatchRequest, "interval_s", property(lambda self: interval))
    return interval

