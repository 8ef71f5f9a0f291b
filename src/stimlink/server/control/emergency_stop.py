"""All-endpoints, all-channels reset to zero output."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from stimlink.server import metrics as m
from stimlink.server.control.binding_registry import take_snapshot
from stimlink.server.control.dispatch import DispatchScheduler
from stimlink.server.control.transport import ALL_CHANNELS, Channel, StimCommand, Transport
from stimlink.server.metrics import Metrics

logger = logging.getLogger(__name__)

STOP_SEQUENCE: tuple[StimCommand, ...] = (StimCommand.clear(), StimCommand.zero_strength())


@dataclass
class StopReport:
    success: bool = False
    endpoints: int = 0
    issued: int = 0
    succeeded: int = 0
    failed: list[tuple[str, Channel, str]] = field(default_factory=list)


class EmergencyStopCoordinator:
    """Send clear + zero-strength on both channels of every bound endpoint.

    Every command is attempted even when others fail; the stop only reports
    success when every one of them was acknowledged. With no bound endpoints
    there is nothing to confirm, so the stop reports failure.
    """

    def __init__(
        self,
        transport: Transport,
        scheduler: Optional[DispatchScheduler] = None,
        *,
        metrics: Optional[Metrics] = None,
        yield_timeout_s: float = 3.0,
        log_commands: bool = False,
    ) -> None:
        self._transport = transport
        self._scheduler = scheduler
        self._metrics = metrics or Metrics()
        self._yield_timeout_s = max(0.0, float(yield_timeout_s))
        self._log_commands = log_commands

    async def emergency_stop(self) -> bool:
        report = await self.run()
        return report.success

    async def run(self) -> StopReport:
        self._metrics.inc(m.EMERGENCY_STOPS)
        scheduler = self._scheduler
        yielding = scheduler is not None and scheduler.yield_to_stop
        if scheduler is not None:
            scheduler.interrupt_all("emergency stop")
        if yielding:
            scheduler.begin_stop()
        try:
            if yielding and not await scheduler.wait_inflight(self._yield_timeout_s):
                logger.warning("emergency stop: in-flight ticks still running after %.1fs", self._yield_timeout_s)
            return await self._send_stop()
        finally:
            if yielding:
                scheduler.end_stop()

    async def _send_stop(self) -> StopReport:
        snapshot = take_snapshot(self._transport, self._transport.controller_id)
        report = StopReport(endpoints=snapshot.target_count)
        if not snapshot.targets:
            logger.warning("emergency stop: no bound endpoints connected, nothing confirmed")
            self._metrics.inc(m.EMERGENCY_STOP_FAILURES)
            return report

        plan = [
            (endpoint_id, channel, command)
            for endpoint_id in snapshot.targets
            for channel in ALL_CHANNELS
            for command in STOP_SEQUENCE
        ]
        results = await asyncio.gather(*(self._send(*item) for item in plan))
        report.issued = len(results)
        report.succeeded = sum(1 for ok in results if ok)
        report.failed = [
            (endpoint_id, channel, command.kind.value)
            for (endpoint_id, channel, command), ok in zip(plan, results)
            if not ok
        ]
        report.success = report.succeeded == report.issued
        if report.success:
            logger.info("emergency stop confirmed on %d endpoint(s)", report.endpoints)
        else:
            self._metrics.inc(m.EMERGENCY_STOP_FAILURES)
            logger.warning(
                "emergency stop partially failed: %d/%d commands acknowledged",
                report.succeeded,
                report.issued,
            )
        return report

    async def _send(self, endpoint_id: str, channel: Channel, command: StimCommand) -> bool:
        try:
            ok = bool(await self._transport.send_to(endpoint_id, channel, command))
        except Exception:
            logger.warning(
                "emergency stop %s to %s on channel %s raised",
                command.kind.value,
                endpoint_id[:8],
                channel.letter,
                exc_info=True,
            )
            ok = False
        if self._log_commands:
            logger.debug(
                "stop command %s endpoint=%s channel=%s ok=%s",
                command.kind.value,
                endpoint_id[:8],
                channel.letter,
                ok,
            )
        return ok


__all__ = ["EmergencyStopCoordinator", "STOP_SEQUENCE", "StopReport"]
