"""
stimlink: haptic stimulus orchestration for game events.

Turns semantic host events (damage, death) into timed stimulation command
sequences delivered to bound device apps over a WebSocket control channel.
"""

__version__ = "0.1.0"
