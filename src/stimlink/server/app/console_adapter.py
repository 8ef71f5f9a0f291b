"""Line-oriented stand-in for an instrumented host.

Reads commands from a text stream on a background thread and forwards them
to the orchestrator's thread-safe entry points. Useful for pairing a device
and checking output without running the game.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import Optional, TextIO

from stimlink.server.app.orchestrator import Orchestrator
from stimlink.server.control.profiles import DeathKind

logger = logging.getLogger(__name__)

HELP = "commands: damage <n> | death [normal|nonlethal|frost] | stop | status | help"


class ConsoleAdapter:
    def __init__(self, orchestrator: Orchestrator, stream: Optional[TextIO] = None) -> None:
        self._orchestrator = orchestrator
        self._stream = stream if stream is not None else sys.stdin
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def handle_line(self, line: str) -> Optional[str]:
        parts = line.strip().split()
        if not parts:
            return None
        cmd, args = parts[0].lower(), parts[1:]
        orch = self._orchestrator
        if cmd in ("damage", "d"):
            try:
                magnitude = int(args[0]) if args else 1
            except ValueError:
                return f"invalid damage amount {args[0]!r}"
            orch.handle_damage_event(magnitude)
            return f"damage {magnitude} submitted"
        if cmd == "death":
            raw = args[0].lower() if args else DeathKind.NORMAL.value
            try:
                kind = DeathKind(raw)
            except ValueError:
                return f"unknown death kind {raw!r}"
            orch.handle_death_event(kind)
            return f"death ({kind.value}) submitted"
        if cmd == "stop":
            ok = orch.emergency_stop_threadsafe()
            return "emergency stop confirmed" if ok else "emergency stop NOT confirmed"
        if cmd == "status":
            return orch.get_status().describe()
        return HELP

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("console adapter already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="stimlink-console", daemon=True)
        self._thread.start()
        logger.info(HELP)

    def stop(self) -> None:
        self._stop.set()

    def _run(self) -> None:
        for line in self._stream:
            if self._stop.is_set():
                break
            try:
                reply = self.handle_line(line)
            except Exception:
                logger.exception("console command %r failed", line.strip())
                continue
            if reply:
                logger.info(reply)


__all__ = ["ConsoleAdapter", "HELP"]
