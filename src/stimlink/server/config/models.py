"""Configuration dataclasses shared across the server package."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from stimlink.server.config.logging_policy import DebugPolicy, load_debug_policy


@dataclass(frozen=True)
class OrchestratorConfig:
    """Top-level orchestrator and control-channel values."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 9999
    port_search_start: int = 9999
    port_search_end: int = 10099
    advertise_host: Optional[str] = None
    damage_debounce_ms: int = 1000
    cadence_hz: int = 1
    shutdown_grace_s: float = 3.0
    # Open behaviour: the app gives no ordering between a stop and a racing
    # tick. False keeps last-writer-wins; True makes stops wait for ticks.
    dispatch_yields_to_stop: bool = False
    task_queue_size: int = 16
    dispatch_workers: int = 4
    send_timeout_s: float = 5.0
    heartbeat_s: float = 60.0


@dataclass(frozen=True)
class ServerCtx:
    """Resolved runtime context shared across subsystems."""

    cfg: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    debug_policy: DebugPolicy = field(default_factory=lambda: load_debug_policy({}))
    metrics_window: int = 512
