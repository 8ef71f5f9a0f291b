from __future__ import annotations

from types import SimpleNamespace

from stimlink.server.control.binding_registry import EMPTY_SNAPSHOT, resolve_targets, take_snapshot


def test_targets_are_connected_and_bound(make_transport) -> None:
    transport = make_transport(["a", "b", "c"])
    transport.bound.discard("c")
    transport.connected.discard("a")
    transport.connected.add("d")

    snapshot = take_snapshot(transport, transport.controller_id)
    assert snapshot.targets == ("b",)
    assert snapshot.connected == 3
    assert snapshot.bound == 2
    assert snapshot.active_connections == 3


def test_other_controller_sees_nothing(make_transport) -> None:
    transport = make_transport(["a"])
    assert resolve_targets(transport, "someone-else") == ()
    assert take_snapshot(transport, None) is EMPTY_SNAPSHOT


def test_failing_source_reads_as_empty() -> None:
    def boom():
        raise RuntimeError("registry gone")

    source = SimpleNamespace(
        list_connected_endpoints=boom,
        list_bound_endpoints=lambda _cid: frozenset({"a"}),
        active_connection_count=lambda: 1,
    )
    assert take_snapshot(source, "ctrl") is EMPTY_SNAPSHOT
