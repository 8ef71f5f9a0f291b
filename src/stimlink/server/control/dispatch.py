"""Timed fan-out of stimulation pulses to every bound endpoint.

One dispatch runs ``duration_s * cadence_hz`` ticks. Each tick re-reads the
live target set, sends one pulse per (endpoint, channel) pair concurrently and
waits for the whole fan-out before the next tick may start. Only tick 0
decides the outcome; later ticks repeat the payload and their failures are
logged and counted.

Inter-tick waits listen on an interrupt event that emergency stops and
shutdown set. An interrupted dispatch returns what it has accumulated so far.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Optional

from stimlink.server import metrics as m
from stimlink.server.control.binding_registry import resolve_targets, take_snapshot
from stimlink.server.control.profiles import WaveProfile
from stimlink.server.control.transport import ALL_CHANNELS, Channel, StimCommand, Transport
from stimlink.server.metrics import Metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchRequest:
    profile: WaveProfile
    channels: tuple[Channel, ...]
    duration_s: int
    cadence_hz: int = 1

    def __post_init__(self) -> None:
        if int(self.duration_s) < 1:
            raise ValueError("dispatch duration must be at least 1 second")
        if int(self.cadence_hz) < 1:
            raise ValueError("dispatch cadence must be at least 1 send per second")
        if not self.channels:
            raise ValueError("dispatch needs at least one channel")

    @property
    def total_ticks(self) -> int:
        return int(self.duration_s) * int(self.cadence_hz)

    @property
    def interval_s(self) -> float:
        return 1.0 / float(self.cadence_hz)


@dataclass(frozen=True)
class TickOutcome:
    index: int
    endpoints: int
    sends: int
    successes: int

    @property
    def failures(self) -> int:
        return self.sends - self.successes


@dataclass
class DispatchResult:
    """Outcome of one dispatch; ``targets`` counts tick-0 sends."""

    success: bool = False
    successes: int = 0
    targets: int = 0
    ticks_run: int = 0
    interrupted: bool = False
    ticks: list[TickOutcome] = field(default_factory=list)
    per_channel: dict[Channel, "DispatchResult"] = field(default_factory=dict)

    def record(self, outcome: TickOutcome) -> None:
        self.ticks.append(outcome)
        self.ticks_run += 1
        if outcome.index == 0:
            self.successes = outcome.successes
            self.targets = outcome.sends
            self.success = outcome.successes > 0


def combine_results(parts: Mapping[Channel, DispatchResult]) -> DispatchResult:
    """Merge per-channel results; succeeds when any channel succeeded."""

    combined = DispatchResult(per_channel=dict(parts))
    for part in parts.values():
        combined.success = combined.success or part.success
        combined.successes += part.successes
        combined.targets += part.targets
        combined.ticks_run = max(combined.ticks_run, part.ticks_run)
        combined.interrupted = combined.interrupted or part.interrupted
    return combined


class DispatchScheduler:
    """Drive timed send sequences against a :class:`Transport`."""

    def __init__(
        self,
        transport: Transport,
        *,
        metrics: Optional[Metrics] = None,
        cadence_hz: int = 1,
        yield_to_stop: bool = False,
        log_ticks: bool = False,
        log_sends: bool = False,
    ) -> None:
        self._transport = transport
        self._metrics = metrics or Metrics()
        self._cadence_hz = max(1, int(cadence_hz))
        self._yield_to_stop = bool(yield_to_stop)
        self._log_ticks = log_ticks
        self._log_sends = log_sends
        self._interrupt = asyncio.Event()
        self._stop_clear = asyncio.Event()
        self._stop_clear.set()
        self._stops_pending = 0
        self._inflight: set[asyncio.Future] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def yield_to_stop(self) -> bool:
        return self._yield_to_stop

    # --- Public surface -----------------------------------------------------

    async def dispatch(
        self,
        profile: WaveProfile,
        channels: Iterable[Channel],
        duration_s: Optional[int] = None,
    ) -> DispatchResult:
        request = DispatchRequest(
            profile=profile,
            channels=tuple(Channel(ch) for ch in channels),
            duration_s=int(duration_s if duration_s is not None else profile.duration_s),
            cadence_hz=self._cadence_hz,
        )
        return await self.run(request)

    async def dispatch_all_channels(self, profile: WaveProfile, duration_s: Optional[int] = None) -> DispatchResult:
        outcomes = await asyncio.gather(
            *(self.dispatch(profile, (channel,), duration_s) for channel in ALL_CHANNELS),
            return_exceptions=True,
        )
        parts: dict[Channel, DispatchResult] = {}
        for channel, outcome in zip(ALL_CHANNELS, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error("dispatch on channel %s failed", channel.letter, exc_info=outcome)
                outcome = DispatchResult()
            parts[channel] = outcome
        return combine_results(parts)

    async def run(self, request: DispatchRequest) -> DispatchResult:
        channels = "+".join(ch.letter for ch in request.channels)
        if self._closed:
            logger.debug("dispatch on %s skipped: scheduler closed", channels)
            return DispatchResult()

        controller_id = self._transport.controller_id
        snapshot = take_snapshot(self._transport, controller_id)
        self._metrics.set(m.BOUND_ENDPOINTS, float(snapshot.target_count))
        if not snapshot.targets:
            logger.info("no bound endpoints connected; dispatch on %s skipped", channels)
            self._metrics.inc(m.DISPATCHES_IDLE)
            return DispatchResult()

        self._metrics.inc(m.DISPATCHES_TOTAL)
        interrupt = self._interrupt
        result = DispatchResult()
        command = StimCommand.pulse(request.profile.payload, request.duration_s)
        total = request.total_ticks
        targets: tuple[str, ...] = snapshot.targets

        for index in range(total):
            if interrupt.is_set():
                result.interrupted = True
                break
            yielded = False
            if self._yield_to_stop and not self._stop_clear.is_set():
                await self._wait_for_stop_clear(interrupt)
                if interrupt.is_set():
                    result.interrupted = True
                    break
                yielded = True
            if index > 0 or yielded:
                targets = resolve_targets(self._transport, controller_id)
            outcome = await self._run_tick(index, request, command, targets)
            result.record(outcome)
            if index == 0:
                logger.info(
                    "sent waveform %d to %d/%d sends on channel %s for %ds",
                    int(request.profile.waveform),
                    outcome.successes,
                    outcome.sends,
                    channels,
                    request.duration_s,
                )
            elif outcome.failures:
                logger.warning(
                    "tick %d/%d on channel %s: %d of %d sends failed",
                    index + 1,
                    total,
                    channels,
                    outcome.failures,
                    outcome.sends,
                )
            if index < total - 1 and await self._wait_interval(interrupt, request.interval_s):
                result.interrupted = True
                break

        if result.interrupted:
            self._metrics.inc(m.DISPATCHES_INTERRUPTED)
            logger.info(
                "dispatch on channel %s interrupted after %d/%d ticks",
                channels,
                result.ticks_run,
                total,
            )
        return result

    def interrupt_all(self, reason: str = "") -> None:
        """Wake every in-flight inter-tick wait; those dispatches stop ticking.

        Dispatches started afterwards listen on a fresh event.
        """

        self._interrupt.set()
        self._interrupt = asyncio.Event()
        if reason:
            logger.debug("dispatches interrupted: %s", reason)

    def close(self) -> None:
        self._closed = True
        self.interrupt_all("scheduler closed")

    # --- Emergency-stop coordination ----------------------------------------

    def begin_stop(self) -> None:
        self._stops_pending += 1
        self._stop_clear.clear()

    def end_stop(self) -> None:
        self._stops_pending = max(0, self._stops_pending - 1)
        if self._stops_pending == 0:
            self._stop_clear.set()

    async def wait_inflight(self, timeout: Optional[float]) -> bool:
        """Wait for in-flight tick fan-outs; False when ``timeout`` expired first."""

        pending = set(self._inflight)
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        return not still_pending

    # --- Internals ----------------------------------------------------------

    async def _run_tick(
        self,
        index: int,
        request: DispatchRequest,
        command: StimCommand,
        targets: tuple[str, ...],
    ) -> TickOutcome:
        self._metrics.inc(m.TICKS_TOTAL)
        if not targets:
            if self._log_ticks:
                logger.debug("tick %d: no targets", index)
            return TickOutcome(index=index, endpoints=0, sends=0, successes=0)

        t0 = time.perf_counter()
        sends = [
            self._send(endpoint_id, channel, command, index)
            for endpoint_id in targets
            for channel in request.channels
        ]
        fanout = asyncio.ensure_future(asyncio.gather(*sends))
        self._inflight.add(fanout)
        try:
            results = await fanout
        finally:
            self._inflight.discard(fanout)
        successes = sum(1 for ok in results if ok)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        self._metrics.observe_ms(m.TICK_MS, elapsed_ms)
        if self._log_ticks:
            logger.debug(
                "tick %d: endpoints=%d sends=%d ok=%d in %.1fms",
                index,
                len(targets),
                len(results),
                successes,
                elapsed_ms,
            )
        return TickOutcome(index=index, endpoints=len(targets), sends=len(results), successes=successes)

    async def _send(self, endpoint_id: str, channel: Channel, command: StimCommand, index: int) -> bool:
        self._metrics.inc(m.SENDS_TOTAL)
        try:
            ok = bool(await self._transport.send_to(endpoint_id, channel, command))
        except Exception:
            logger.warning(
                "send to %s on channel %s raised (tick %d)",
                endpoint_id[:8],
                channel.letter,
                index,
                exc_info=True,
            )
            ok = False
        if not ok:
            self._metrics.inc(m.SEND_FAILURES)
        if self._log_sends:
            logger.debug("send endpoint=%s channel=%s tick=%d ok=%s", endpoint_id[:8], channel.letter, index, ok)
        return ok

    async def _wait_interval(self, interrupt: asyncio.Event, interval_s: float) -> bool:
        try:
            await asyncio.wait_for(interrupt.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            return False
        return True

    async def _wait_for_stop_clear(self, interrupt: asyncio.Event) -> None:
        stop_clear = asyncio.ensure_future(self._stop_clear.wait())
        interrupted = asyncio.ensure_future(interrupt.wait())
        try:
            await asyncio.wait({stop_clear, interrupted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_clear.cancel()
            interrupted.cancel()


__all__ = [
    "DispatchRequest",
    "DispatchResult",
    "DispatchScheduler",
    "TickOutcome",
    "combine_results",
]
