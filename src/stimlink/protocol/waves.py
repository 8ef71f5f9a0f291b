"""Waveform presets and their pulse-frame encoding.

A pulse frame covers 100 ms and is eight bytes rendered as 16 hex characters:
four 25 ms frequency samples followed by four 25 ms intensity samples. The
app expects a JSON array of such frames after the ``pulse-<channel>:`` prefix.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import IntEnum
from functools import lru_cache

import numpy as np

FRAMES_PER_SECOND = 10
SAMPLES_PER_FRAME = 4
FREQ_MIN = 10
FREQ_MAX = 240
INTENSITY_MAX = 100


class WaveType(IntEnum):
    """Closed set of waveform selections, ordered by severity."""

    LIGHT = 1
    MEDIUM = 2
    HEAVY = 3


@dataclass(frozen=True)
class WaveShape:
    freq_start: int
    freq_end: int
    intensity_start: int
    intensity_end: int


WAVE_SHAPES: dict[WaveType, WaveShape] = {
    WaveType.LIGHT: WaveShape(freq_start=10, freq_end=10, intensity_start=0, intensity_end=30),
    WaveType.MEDIUM: WaveShape(freq_start=20, freq_end=15, intensity_start=20, intensity_end=65),
    WaveType.HEAVY: WaveShape(freq_start=10, freq_end=10, intensity_start=100, intensity_end=100),
}


def _ramp(start: int, end: int, lo: int, hi: int) -> np.ndarray:
    samples = FRAMES_PER_SECOND * SAMPLES_PER_FRAME
    values = np.linspace(start, end, samples).round().astype(int)
    return np.clip(values, lo, hi).reshape(FRAMES_PER_SECOND, SAMPLES_PER_FRAME)


def encode_frame(freqs: np.ndarray, intensities: np.ndarray) -> str:
    raw = bytes(int(v) for v in freqs) + bytes(int(v) for v in intensities)
    if len(raw) != 2 * SAMPLES_PER_FRAME:
        raise ValueError("pulse frame needs four frequency and four intensity samples")
    return raw.hex().upper()


def wave_frames(wave: WaveType | int) -> list[str]:
    """Return one second of hex pulse frames for ``wave``."""

    shape = WAVE_SHAPES[WaveType(wave)]
    freqs = _ramp(shape.freq_start, shape.freq_end, FREQ_MIN, FREQ_MAX)
    intensities = _ramp(shape.intensity_start, shape.intensity_end, 0, INTENSITY_MAX)
    return [encode_frame(f, i) for f, i in zip(freqs, intensities)]


@lru_cache(maxsize=None)
def encode_wave(wave: WaveType | int) -> str:
    """Opaque payload for ``wave``: the JSON array the app queues per send."""

    return json.dumps(wave_frames(WaveType(wave)), separators=(",", ":"))


__all__ = [
    "FRAMES_PER_SECOND",
    "WAVE_SHAPES",
    "WaveShape",
    "WaveType",
    "encode_frame",
    "encode_wave",
    "wave_frames",
]
