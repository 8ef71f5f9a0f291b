"""Point-in-time reads of which endpoints may receive commands.

Binding membership is owned by the transport. The core re-derives the live
target set (connected AND bound) on every tick and never caches it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class BindingSource(Protocol):
    def list_connected_endpoints(self) -> frozenset[str]: ...

    def list_bound_endpoints(self, controller_id: str) -> frozenset[str]: ...

    def active_connection_count(self) -> int: ...


@dataclass(frozen=True)
class BindingSnapshot:
    targets: tuple[str, ...]
    connected: int
    bound: int
    active_connections: int

    @property
    def target_count(self) -> int:
        return len(self.targets)


EMPTY_SNAPSHOT = BindingSnapshot(targets=(), connected=0, bound=0, active_connections=0)


def take_snapshot(source: BindingSource, controller_id: Optional[str]) -> BindingSnapshot:
    """Read connected, bound and active counts from ``source`` once.

    A failing source reads as an empty snapshot; having zero targets is the
    idle outcome, not an error.
    """

    if not controller_id:
        return EMPTY_SNAPSHOT
    try:
        connected = frozenset(source.list_connected_endpoints())
        bound = frozenset(source.list_bound_endpoints(controller_id))
        active = int(source.active_connection_count())
    except Exception:
        logger.warning("binding registry read failed; treating as no targets", exc_info=True)
        return EMPTY_SNAPSHOT
    targets = tuple(sorted(connected & bound))
    return BindingSnapshot(
        targets=targets,
        connected=len(connected),
        bound=len(bound),
        active_connections=active,
    )


def resolve_targets(source: BindingSource, controller_id: Optional[str]) -> tuple[str, ...]:
    return take_snapshot(source, controller_id).targets


__all__ = [
    "BindingSnapshot",
    "BindingSource",
    "EMPTY_SNAPSHOT",
    "resolve_targets",
    "take_snapshot",
]
