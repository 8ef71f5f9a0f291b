"""Control-channel frames spoken with the device app.

The app relays JSON objects carrying four string fields (``type``,
``clientId``, ``targetId`` and ``message``). Commands and status codes travel
inside ``message`` as short text tokens, so every builder here returns a plain
:class:`ControlFrame` that serialises to a single JSON text frame.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

# Frame types
BIND_TYPE = "bind"
MSG_TYPE = "msg"
HEARTBEAT_TYPE = "heartbeat"
BREAK_TYPE = "break"
ERROR_TYPE = "error"

# Status codes carried in ``message``
CODE_OK = "200"
CODE_PEER_GONE = "209"
CODE_ALREADY_BOUND = "400"
CODE_UNKNOWN_TARGET = "401"
CODE_NOT_PAIRED = "402"
CODE_NOT_JSON = "403"
CODE_NO_RECIPIENT = "404"
CODE_TOO_LONG = "405"
CODE_SERVER_ERROR = "500"

BIND_PROMPT = "targetId"
BIND_REQUEST = "DGLAB"
MAX_MESSAGE_LENGTH = 1950

STRENGTH_DECREASE = 0
STRENGTH_INCREASE = 1
STRENGTH_SET = 2

_CHANNEL_LETTERS = {1: "A", 2: "B"}


@dataclass(frozen=True, slots=True)
class ControlFrame:
    """One JSON frame on the control channel."""

    type: str
    client_id: str
    target_id: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type,
            "clientId": self.client_id,
            "targetId": self.target_id,
            "message": self.message,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ControlFrame":
        if not isinstance(data, Mapping):
            raise ValueError("control frame must be a JSON object")
        frame_type = data.get("type")
        if not isinstance(frame_type, str) or not frame_type:
            raise ValueError("control frame missing 'type'")
        return cls(
            type=frame_type,
            client_id=_as_text(data.get("clientId")),
            target_id=_as_text(data.get("targetId")),
            message=_as_text(data.get("message")),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> "ControlFrame":
        try:
            data = json.loads(text)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ValueError("control frame is not valid JSON") from exc
        return cls.from_dict(data)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _channel_letter(channel: int) -> str:
    try:
        return _CHANNEL_LETTERS[int(channel)]
    except (KeyError, TypeError, ValueError):
        raise ValueError(f"unknown channel {channel!r}") from None


# --- Command tokens -----------------------------------------------------------


def pulse_message(channel: int, wave_payload: str) -> str:
    """Queue ``wave_payload`` (a JSON array of hex frames) on ``channel``."""

    return f"pulse-{_channel_letter(channel)}:{wave_payload}"


def clear_message(channel: int) -> str:
    """Drop the pulse queue on ``channel``."""

    _channel_letter(channel)
    return f"clear-{int(channel)}"


def strength_message(channel: int, mode: int, value: int) -> str:
    _channel_letter(channel)
    if mode not in (STRENGTH_DECREASE, STRENGTH_INCREASE, STRENGTH_SET):
        raise ValueError(f"unknown strength mode {mode!r}")
    if not 0 <= int(value) <= 200:
        raise ValueError("strength value must be within 0..200")
    return f"strength-{int(channel)}+{mode}+{int(value)}"


def strength_zero_message(channel: int) -> str:
    return strength_message(channel, STRENGTH_SET, 0)


# --- Frame builders -----------------------------------------------------------


def build_bind_prompt(client_id: str) -> ControlFrame:
    """First frame on every connection; tells the peer its assigned identity."""

    return ControlFrame(BIND_TYPE, client_id, "", BIND_PROMPT)


def build_bind_reply(controller_id: str, endpoint_id: str, code: str) -> ControlFrame:
    return ControlFrame(BIND_TYPE, controller_id, endpoint_id, code)


def build_heartbeat(client_id: str) -> ControlFrame:
    return ControlFrame(HEARTBEAT_TYPE, client_id, "", CODE_OK)


def build_break(controller_id: str, endpoint_id: str, code: str = CODE_PEER_GONE) -> ControlFrame:
    return ControlFrame(BREAK_TYPE, controller_id, endpoint_id, code)


def build_error(client_id: str, code: str, target_id: str = "") -> ControlFrame:
    return ControlFrame(ERROR_TYPE, client_id, target_id, code)


def build_command(controller_id: str, endpoint_id: str, message: str) -> ControlFrame:
    return ControlFrame(MSG_TYPE, controller_id, endpoint_id, message)


__all__ = [
    "BIND_PROMPT",
    "BIND_REQUEST",
    "BIND_TYPE",
    "BREAK_TYPE",
    "CODE_ALREADY_BOUND",
    "CODE_NOT_JSON",
    "CODE_NOT_PAIRED",
    "CODE_NO_RECIPIENT",
    "CODE_OK",
    "CODE_PEER_GONE",
    "CODE_SERVER_ERROR",
    "CODE_TOO_LONG",
    "CODE_UNKNOWN_TARGET",
    "ControlFrame",
    "ERROR_TYPE",
    "HEARTBEAT_TYPE",
    "MAX_MESSAGE_LENGTH",
    "MSG_TYPE",
    "STRENGTH_DECREASE",
    "STRENGTH_INCREASE",
    "STRENGTH_SET",
    "build_bind_prompt",
    "build_bind_reply",
    "build_break",
    "build_command",
    "build_error",
    "build_heartbeat",
    "clear_message",
    "pulse_message",
    "strength_message",
    "strength_zero_message",
]
