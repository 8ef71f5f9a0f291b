"""Wire-level definitions for the stimlink control channel."""

from __future__ import annotations

from .messages import *  # noqa: F401,F403
from .waves import WaveType, encode_wave

__all__ = [name for name in globals().keys() if not name.startswith("_")]
