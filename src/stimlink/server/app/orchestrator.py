"""Orchestration facade the host application talks to.

The facade owns the lifecycle state machine and composes the debouncer,
profile resolver, dispatch scheduler and emergency-stop coordinator behind a
handful of calls. Host event hooks usually run on threads other than the
event loop, so ``handle_damage_event`` / ``handle_death_event`` only resolve a
profile and hand a job to a bounded queue; a fixed pool of worker tasks on
the loop runs the dispatches.

State flow::

    UNINITIALIZED -> INITIALIZING -> READY <-> DEGRADED
                          |            |          |
                          v            v          v
                       STOPPED <- SHUTTING_DOWN <-+

``STOPPED`` is terminal until the caller explicitly starts again.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

from stimlink.protocol.waves import encode_wave
from stimlink.server import metrics as m
from stimlink.server.config.loader import config_summary, validate_config
from stimlink.server.config.models import OrchestratorConfig, ServerCtx
from stimlink.server.control.binding_registry import take_snapshot
from stimlink.server.control.control_channel_server import (
    connection_url,
    find_available_port,
    is_port_available,
    local_ip_address,
)
from stimlink.server.control.debounce import EventClass, EventDebouncer
from stimlink.server.control.dispatch import DispatchResult, DispatchScheduler
from stimlink.server.control.emergency_stop import EmergencyStopCoordinator
from stimlink.server.control.events import (
    EventSink,
    LoggingEventSink,
    StatusUpdate,
    TransportEvent,
    TransportEventKind,
)
from stimlink.server.control.profiles import (
    DeathKind,
    WaveEncoder,
    WaveProfile,
    resolve_damage_profile,
    resolve_death_profile,
)
from stimlink.server.control.transport import StartupError, Transport
from stimlink.server.metrics import Metrics

logger = logging.getLogger(__name__)

PortSelector = Callable[[OrchestratorConfig], Optional[int]]


class OrchestratorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


_TRANSITIONS: dict[OrchestratorState, frozenset[OrchestratorState]] = {
    OrchestratorState.UNINITIALIZED: frozenset({OrchestratorState.INITIALIZING}),
    OrchestratorState.INITIALIZING: frozenset({OrchestratorState.READY, OrchestratorState.STOPPED}),
    OrchestratorState.READY: frozenset({OrchestratorState.DEGRADED, OrchestratorState.SHUTTING_DOWN}),
    OrchestratorState.DEGRADED: frozenset({OrchestratorState.READY, OrchestratorState.SHUTTING_DOWN}),
    OrchestratorState.SHUTTING_DOWN: frozenset({OrchestratorState.STOPPED}),
    OrchestratorState.STOPPED: frozenset({OrchestratorState.INITIALIZING}),
}

_SERVING = frozenset({OrchestratorState.READY, OrchestratorState.DEGRADED})


@dataclass(frozen=True)
class OrchestratorStatus:
    state: OrchestratorState
    active_connections: int = 0
    bound_endpoint_count: int = 0
    port: Optional[int] = None
    controller_id: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.state is OrchestratorState.READY

    def describe(self) -> str:
        if self.state not in _SERVING:
            detail = f" ({self.last_error})" if self.last_error else ""
            return f"orchestrator {self.state.value}{detail}"
        return (
            f"state={self.state.value} port={self.port} "
            f"active clients={self.active_connections} bound apps={self.bound_endpoint_count}"
        )


@dataclass(frozen=True)
class DispatchJob:
    event_class: EventClass
    profile: WaveProfile
    detail: str = ""
    received_at: float = field(default_factory=time.monotonic)


def select_listen_port(cfg: OrchestratorConfig) -> Optional[int]:
    """Configured port when free, otherwise the first free port in the search range."""

    if is_port_available(cfg.host, cfg.port):
        return cfg.port
    logger.warning("port %d unavailable; searching %d-%d", cfg.port, cfg.port_search_start, cfg.port_search_end)
    port = find_available_port(cfg.host, cfg.port_search_start + 1, cfg.port_search_end)
    if port is not None:
        logger.info("found available port %d", port)
    return port


class Orchestrator:
    """Constructed, explicitly owned entry point for host adapters."""

    def __init__(
        self,
        transport: Transport,
        ctx: Optional[ServerCtx] = None,
        *,
        sink: Optional[EventSink] = None,
        metrics: Optional[Metrics] = None,
        time_fn: Callable[[], float] = time.monotonic,
        encoder: WaveEncoder = encode_wave,
        port_selector: PortSelector = select_listen_port,
    ) -> None:
        self._ctx = ctx or ServerCtx()
        self.cfg = self._ctx.cfg
        toggles = self._ctx.debug_policy.logging
        self._toggles = toggles
        self._transport = transport
        self._sink: EventSink = sink or LoggingEventSink(verbose=toggles.log_bindings)
        self.metrics = metrics or Metrics(window=self._ctx.metrics_window)
        self._encoder = encoder
        self._port_selector = port_selector
        self._debouncer = EventDebouncer(
            {EventClass.DAMAGE: float(self.cfg.damage_debounce_ms)},
            time_fn=time_fn,
        )

        self._state = OrchestratorState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._last_error: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[DispatchJob]] = None
        self._workers: list[asyncio.Task] = []
        self._scheduler: Optional[DispatchScheduler] = None
        self._stopper: Optional[EmergencyStopCoordinator] = None
        self.last_dispatch: Optional[DispatchResult] = None

    # --- State machine ------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        with self._state_lock:
            return self._state

    @property
    def scheduler(self) -> Optional[DispatchScheduler]:
        return self._scheduler

    def _transition(self, target: OrchestratorState, reason: str, *, expect: Optional[frozenset] = None) -> bool:
        with self._state_lock:
            current = self._state
            if expect is not None and current not in expect:
                return False
            if target not in _TRANSITIONS[current]:
                logger.debug("ignored transition %s -> %s (%s)", current.value, target.value, reason)
                return False
            self._state = target
        snapshot = self._snapshot()
        self._publish(
            StatusUpdate(
                state=target.value,
                reason=reason,
                active_connections=snapshot.active_connections,
                bound_endpoints=snapshot.target_count,
            )
        )
        return True

    def _serving(self) -> bool:
        return self.state in _SERVING

    # --- Lifecycle ----------------------------------------------------------

    async def start(self) -> bool:
        """Bring up the control channel; False when startup failed."""

        if not self._transition(OrchestratorState.INITIALIZING, "start requested"):
            state = self.state
            logger.warning("start ignored in state %s", state.value)
            return state in _SERVING
        self._last_error = None
        cfg = self.cfg
        for problem in validate_config(cfg):
            logger.warning("config: %s", problem)
        logger.info("config: %s", config_summary(cfg))

        self._loop = asyncio.get_running_loop()
        self._transport.set_event_callback(self._on_transport_event)

        port = self._port_selector(cfg)
        if port is None:
            return self._fail_start("no usable listening port found")
        try:
            controller_id = await self._transport.start_listening(port)
        except StartupError as exc:
            return self._fail_start(str(exc))
        except Exception as exc:
            logger.exception("control channel failed to start")
            return self._fail_start(str(exc) or type(exc).__name__)

        self._scheduler = DispatchScheduler(
            self._transport,
            metrics=self.metrics,
            cadence_hz=cfg.cadence_hz,
            yield_to_stop=cfg.dispatch_yields_to_stop,
            log_ticks=self._toggles.log_ticks,
            log_sends=self._toggles.log_sends,
        )
        self._stopper = EmergencyStopCoordinator(
            self._transport,
            self._scheduler,
            metrics=self.metrics,
            yield_timeout_s=cfg.shutdown_grace_s,
            log_commands=self._toggles.log_stop,
        )
        self._queue = asyncio.Queue(maxsize=cfg.task_queue_size)
        self._workers = [
            asyncio.create_task(self._worker_loop(), name=f"stimlink-dispatch-{i}")
            for i in range(cfg.dispatch_workers)
        ]
        self._transition(OrchestratorState.READY, f"listening on port {port}")
        logger.info("controller id %s; waiting for apps to connect", controller_id)
        url = self.connection_url()
        if url is not None:
            logger.info("connection URL: %s", url)
        return True

    def _fail_start(self, reason: str) -> bool:
        self._last_error = reason
        logger.error("orchestrator start failed: %s", reason)
        self._transport.set_event_callback(None)
        self._transition(OrchestratorState.STOPPED, reason)
        return False

    async def shutdown(self, grace_s: Optional[float] = None) -> None:
        """Stop accepting work, let in-flight ticks finish within the grace period, then cancel."""

        if not self._transition(OrchestratorState.SHUTTING_DOWN, "shutdown requested", expect=_SERVING):
            logger.debug("shutdown ignored in state %s", self.state.value)
            return
        grace = self.cfg.shutdown_grace_s if grace_s is None else max(0.0, float(grace_s))
        queue = self._queue
        if queue is not None:
            dropped = 0
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()
                dropped += 1
            if dropped:
                logger.info("dropped %d queued dispatch(es) on shutdown", dropped)
        if self._scheduler is not None:
            self._scheduler.close()

        workers, self._workers = self._workers, []
        if queue is not None and workers:
            try:
                await asyncio.wait_for(queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("in-flight dispatches still running after %.1fs grace; cancelling", grace)
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

        try:
            await self._transport.stop_listening()
        except Exception:
            logger.exception("control channel failed to stop cleanly")
        self._transport.set_event_callback(None)
        self._transition(OrchestratorState.STOPPED, "shutdown complete")

    # --- Host entry points (any thread) -------------------------------------

    def handle_damage_event(self, magnitude: int) -> None:
        if not self._serving():
            logger.debug("damage event ignored in state %s", self.state.value)
            return
        try:
            magnitude = int(magnitude)
        except (TypeError, ValueError):
            logger.warning("invalid damage magnitude %r ignored", magnitude)
            return
        if not self._debouncer.should_accept(EventClass.DAMAGE):
            self.metrics.inc(m.EVENTS_DEBOUNCED)
            logger.debug("damage %s debounced", magnitude)
            return
        profile = resolve_damage_profile(magnitude, self._encoder)
        logger.info("player took %s damage", magnitude)
        self._submit(DispatchJob(EventClass.DAMAGE, profile, detail=f"damage={magnitude}"))

    def handle_death_event(self, kind: Union[DeathKind, str] = DeathKind.NORMAL) -> None:
        if not self._serving():
            logger.debug("death event ignored in state %s", self.state.value)
            return
        try:
            death_kind = DeathKind(kind)
        except ValueError:
            logger.warning("unknown death kind %r; treating as normal", kind)
            death_kind = DeathKind.NORMAL
        profile = resolve_death_profile(death_kind, self._encoder)
        logger.info("player died (%s)", death_kind.value)
        self._submit(DispatchJob(EventClass.DEATH, profile, detail=f"death={death_kind.value}"))

    async def emergency_stop(self) -> bool:
        if not self._serving() or self._stopper is None:
            logger.warning("emergency stop unavailable in state %s", self.state.value)
            return False
        try:
            return await self._stopper.emergency_stop()
        except Exception:
            logger.exception("emergency stop failed")
            return False

    def emergency_stop_threadsafe(self, timeout: Optional[float] = None) -> bool:
        """Blocking emergency stop for host threads; must not run on the loop thread."""

        loop = self._loop
        if loop is None or loop.is_closed() or not self._serving():
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            logger.error("emergency_stop_threadsafe called on the event loop; await emergency_stop() instead")
            return False
        future = asyncio.run_coroutine_threadsafe(self.emergency_stop(), loop)
        wait_s = timeout if timeout is not None else self.cfg.send_timeout_s + self.cfg.shutdown_grace_s
        try:
            return bool(future.result(wait_s))
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.warning("emergency stop did not complete within %.1fs", wait_s)
            return False
        except Exception:
            logger.exception("emergency stop failed")
            return False

    def get_status(self) -> OrchestratorStatus:
        state = self.state
        snapshot = self._snapshot() if state in _SERVING else None
        return OrchestratorStatus(
            state=state,
            active_connections=snapshot.active_connections if snapshot else 0,
            bound_endpoint_count=snapshot.target_count if snapshot else 0,
            port=self._transport.port,
            controller_id=self._transport.controller_id,
            last_error=self._last_error,
        )

    def connection_url(self) -> Optional[str]:
        controller_id = self._transport.controller_id
        port = self._transport.port
        if controller_id is None or port is None:
            return None
        host = self.cfg.advertise_host or local_ip_address()
        if host is None:
            logger.warning("could not determine LAN address; connect manually to port %d", port)
            host = "YOUR_IP"
        return connection_url(host, port, controller_id)

    async def drain(self) -> None:
        """Wait until every queued dispatch has run."""

        if self._queue is not None:
            await self._queue.join()

    # --- Internals ----------------------------------------------------------

    def _snapshot(self):
        return take_snapshot(self._transport, self._transport.controller_id)

    def _publish(self, update: StatusUpdate) -> None:
        try:
            self._sink.publish(update)
        except Exception:
            logger.debug("event sink publish failed", exc_info=True)

    def _on_transport_event(self, event: TransportEvent) -> None:
        if event.kind is TransportEventKind.CHANNEL_ERROR:
            self._last_error = event.detail or "channel error"
            self._transition(OrchestratorState.DEGRADED, f"channel error: {event.detail}")
        elif event.kind in (TransportEventKind.CONNECTED, TransportEventKind.BIND_SUCCEEDED):
            if self._transition(OrchestratorState.READY, f"transport recovered ({event.kind.value})",
                                expect=frozenset({OrchestratorState.DEGRADED})):
                self._last_error = None
        snapshot = self._snapshot()
        self.metrics.set(m.ACTIVE_CONNECTIONS, float(snapshot.active_connections))
        self.metrics.set(m.BOUND_ENDPOINTS, float(snapshot.target_count))
        self._publish(
            StatusUpdate(
                state=self.state.value,
                reason=event.kind.value,
                active_connections=snapshot.active_connections,
                bound_endpoints=snapshot.target_count,
                event=event,
            )
        )

    def _submit(self, job: DispatchJob) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._enqueue(job)
        else:
            loop.call_soon_threadsafe(self._enqueue, job)

    def _enqueue(self, job: DispatchJob) -> None:
        queue = self._queue
        if queue is None or not self._serving():
            return
        try:
            queue.put_nowait(job)
        except asyncio.QueueFull:
            self.metrics.inc(m.EVENTS_DROPPED)
            logger.warning("dispatch queue full (%d); dropping %s", queue.maxsize, job.detail)

    async def _worker_loop(self) -> None:
        queue = self._queue
        assert queue is not None
        while True:
            job = await queue.get()
            try:
                await self._run_job(job)
            except Exception:
                logger.exception("dispatch for %s failed", job.detail)
            finally:
                queue.task_done()

    async def _run_job(self, job: DispatchJob) -> None:
        scheduler = self._scheduler
        if scheduler is None:
            return
        lag_ms = (time.monotonic() - job.received_at) * 1000.0
        if lag_ms > 1000.0:
            logger.debug("%s waited %.0fms in queue", job.detail, lag_ms)
        result = await scheduler.dispatch_all_channels(job.profile)
        self.last_dispatch = result
        if not result.success:
            logger.debug("%s dispatch reached no endpoint", job.detail)


__all__ = [
    "DispatchJob",
    "Orchestrator",
    "OrchestratorState",
    "OrchestratorStatus",
    "select_listen_port",
]
