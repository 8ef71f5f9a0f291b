"""Contract between the orchestration core and the control-channel transport.

The core only consumes this interface: it never mutates bindings and never
sees wire frames. Payloads inside :class:`StimCommand` are opaque strings
produced by :mod:`stimlink.protocol.waves`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional, Protocol

from stimlink.protocol.messages import clear_message, pulse_message, strength_zero_message
from stimlink.server.control.events import TransportEventCallback


class Channel(IntEnum):
    """The two independent stimulation outputs."""

    A = 1
    B = 2

    @property
    def letter(self) -> str:
        return self.name


ALL_CHANNELS: tuple[Channel, ...] = (Channel.A, Channel.B)


class CommandKind(str, Enum):
    PULSE = "pulse"
    CLEAR = "clear"
    ZERO_STRENGTH = "zero_strength"


@dataclass(frozen=True, slots=True)
class StimCommand:
    kind: CommandKind
    payload: Optional[str] = None
    duration_s: Optional[int] = None

    @classmethod
    def pulse(cls, payload: str, duration_s: Optional[int] = None) -> "StimCommand":
        return cls(CommandKind.PULSE, payload, duration_s)

    @classmethod
    def clear(cls) -> "StimCommand":
        return cls(CommandKind.CLEAR)

    @classmethod
    def zero_strength(cls) -> "StimCommand":
        return cls(CommandKind.ZERO_STRENGTH)


def render_command(channel: Channel, command: StimCommand) -> str:
    """Message token the device app understands for ``command`` on ``channel``."""

    if command.kind is CommandKind.PULSE:
        if not command.payload:
            raise ValueError("pulse command requires a payload")
        return pulse_message(int(channel), command.payload)
    if command.kind is CommandKind.CLEAR:
        return clear_message(int(channel))
    if command.kind is CommandKind.ZERO_STRENGTH:
        return strength_zero_message(int(channel))
    raise ValueError(f"unsupported command kind {command.kind!r}")


class StartupError(RuntimeError):
    """The control channel could not start listening."""


class Transport(Protocol):
    """Connection-oriented control channel consumed by the orchestrator."""

    @property
    def controller_id(self) -> Optional[str]: ...

    @property
    def port(self) -> Optional[int]: ...

    async def start_listening(self, port: int) -> str:
        """Bind and listen; return the controller identity or raise StartupError."""
        ...

    async def stop_listening(self) -> None: ...

    async def send_to(self, endpoint_id: str, channel: Channel, command: StimCommand) -> bool: ...

    def list_connected_endpoints(self) -> frozenset[str]: ...

    def list_bound_endpoints(self, controller_id: str) -> frozenset[str]: ...

    def active_connection_count(self) -> int: ...

    def set_event_callback(self, callback: Optional[TransportEventCallback]) -> None: ...


__all__ = [
    "ALL_CHANNELS",
    "Channel",
    "CommandKind",
    "StartupError",
    "StimCommand",
    "Transport",
    "render_command",
]
