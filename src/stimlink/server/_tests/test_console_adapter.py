from __future__ import annotations

import io
import time
from types import SimpleNamespace

from stimlink.server.app.console_adapter import HELP, ConsoleAdapter
from stimlink.server.control.profiles import DeathKind


def _stub_orchestrator(calls: list):
    return SimpleNamespace(
        handle_damage_event=lambda magnitude: calls.append(("damage", magnitude)),
        handle_death_event=lambda kind: calls.append(("death", kind)),
        emergency_stop_threadsafe=lambda: calls.append(("stop",)) or True,
        get_status=lambda: SimpleNamespace(describe=lambda: "state=ready port=9999"),
    )


def test_commands_forward_to_orchestrator() -> None:
    calls: list = []
    adapter = ConsoleAdapter(_stub_orchestrator(calls), stream=io.StringIO())

    assert adapter.handle_line("damage 3") == "damage 3 submitted"
    assert adapter.handle_line("d") == "damage 1 submitted"
    assert adapter.handle_line("death frost") == "death (frost) submitted"
    assert adapter.handle_line("stop") == "emergency stop confirmed"
    assert adapter.handle_line("status") == "state=ready port=9999"
    assert calls == [("damage", 3), ("damage", 1), ("death", DeathKind.FROST), ("stop",)]


def test_bad_input_is_reported_not_forwarded() -> None:
    calls: list = []
    adapter = ConsoleAdapter(_stub_orchestrator(calls), stream=io.StringIO())

    assert adapter.handle_line("") is None
    assert adapter.handle_line("damage lots") == "invalid damage amount 'lots'"
    assert adapter.handle_line("death drowned") == "unknown death kind 'drowned'"
    assert adapter.handle_line("dance") == HELP
    assert calls == []


def test_background_thread_reads_stream() -> None:
    calls: list = []
    adapter = ConsoleAdapter(_stub_orchestrator(calls), stream=io.StringIO("damage 2\ndeath\n"))
    adapter.start()
    deadline = time.monotonic() + 2.0
    while len(calls) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    adapter.stop()
    assert calls == [("damage", 2), ("death", DeathKind.NORMAL)]
