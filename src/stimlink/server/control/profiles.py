"""Map host events to stimulation profiles.

Pure and total: every integer damage magnitude and every death kind resolves
to exactly one profile.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from stimlink.protocol.waves import WaveType, encode_wave

WaveEncoder = Callable[[WaveType], str]

DEATH_DURATION_S = 5


class DeathKind(str, Enum):
    NORMAL = "normal"
    NON_LETHAL = "nonlethal"
    FROST = "frost"


@dataclass(frozen=True)
class WaveProfile:
    waveform: WaveType
    duration_s: int
    payload: str


def damage_response(magnitude: int) -> tuple[WaveType, int]:
    d = int(magnitude)
    if d >= 3:
        return WaveType.HEAVY, 3
    if d == 2:
        return WaveType.MEDIUM, 2
    return WaveType.LIGHT, 1


def resolve_damage_profile(magnitude: int, encoder: WaveEncoder = encode_wave) -> WaveProfile:
    waveform, duration = damage_response(magnitude)
    return WaveProfile(waveform=waveform, duration_s=duration, payload=encoder(waveform))


def resolve_death_profile(kind: DeathKind = DeathKind.NORMAL, encoder: WaveEncoder = encode_wave) -> WaveProfile:
    # kind is informational only
    return WaveProfile(waveform=WaveType.HEAVY, duration_s=DEATH_DURATION_S, payload=encoder(WaveType.HEAVY))


__all__ = [
    "DEATH_DURATION_S",
    "DeathKind",
    "WaveEncoder",
    "WaveProfile",
    "damage_response",
    "resolve_damage_profile",
    "resolve_death_profile",
]
