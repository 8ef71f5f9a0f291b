from __future__ import annotations

import asyncio

import pytest

from stimlink.protocol.waves import WaveType
from stimlink.server import metrics as m
from stimlink.server.control.dispatch import DispatchRequest, DispatchScheduler, combine_results, DispatchResult
from stimlink.server.control.profiles import WaveProfile, resolve_damage_profile
from stimlink.server.control.transport import Channel, CommandKind
from stimlink.server.metrics import Metrics

PROFILE = WaveProfile(waveform=WaveType.MEDIUM, duration_s=3, payload='["0A0A0A0A00000000"]')


def test_no_endpoints_sends_nothing(make_transport) -> None:
    transport = make_transport([])
    metrics = Metrics()

    async def runner() -> DispatchResult:
        return await DispatchScheduler(transport, metrics=metrics).dispatch(PROFILE, (Channel.A,))

    result = asyncio.run(runner())
    assert not result.success
    assert result.targets == 0
    assert result.ticks_run == 0
    assert transport.sends == []
    assert metrics.counter(m.DISPATCHES_IDLE) == 1


def test_unlistened_transport_is_idle(make_transport) -> None:
    transport = make_transport(["a"], listening=False)

    async def runner() -> DispatchResult:
        return await DispatchScheduler(transport).dispatch(PROFILE, (Channel.A,))

    assert not asyncio.run(runner()).success
    assert transport.sends == []


def test_every_tick_reaches_every_endpoint(make_transport, fast_ticks) -> None:
    transport = make_transport(["a", "b"])

    async def runner() -> DispatchResult:
        return await DispatchScheduler(transport).dispatch(PROFILE, (Channel.A,))

    result = asyncio.run(runner())
    assert result.success
    assert result.successes == 2
    assert result.targets == 2
    assert result.ticks_run == 3
    assert [t.sends for t in result.ticks] == [2, 2, 2]
    assert len(transport.sends) == 6
    assert all(cmd.kind is CommandKind.PULSE and cmd.payload == PROFILE.payload for _, _, cmd in transport.sends)
    assert {ch for _, ch, _ in transport.sends} == {Channel.A}


def test_targets_reresolved_each_tick(make_transport, fast_ticks) -> None:
    transport = make_transport(["a", "b"])

    def unbind_b(endpoint_id, channel, command) -> None:
        transport.bound.discard("b")

    transport.on_send = unbind_b

    async def runner() -> DispatchResult:
        return await DispatchScheduler(transport).dispatch(PROFILE, (Channel.A,))

    result = asyncio.run(runner())
    assert [t.sends for t in result.ticks] == [2, 1, 1]
    assert result.targets == 2
    assert result.success


def test_endpoint_joining_mid_dispatch_gets_later_ticks(make_transport, fast_ticks) -> None:
    transport = make_transport(["a"])

    def join(endpoint_id, channel, command) -> None:
        transport.connected.add("late")
        transport.bound.add("late")

    transport.on_send = join

    async def runner() -> DispatchResult:
        return await DispatchScheduler(transport).dispatch(PROFILE, (Channel.A,), duration_s=2)

    result = asyncio.run(runner())
    assert [t.sends for t in result.ticks] == [1, 2]
    assert result.targets == 1


def test_partial_failure_still_succeeds(make_transport, fast_ticks) -> None:
    transport = make_transport(["a", "b", "c"])
    transport.fail = lambda endpoint_id, *_: endpoint_id == "b"
    transport.raise_for.add("c")
    metrics = Metrics()

    async def runner() -> DispatchResult:
        return await DispatchScheduler(transport, metrics=metrics).dispatch(PROFILE, (Channel.A,), duration_s=1)

    result = asyncio.run(runner())
    assert result.success
    assert result.successes == 1
    assert result.targets == 3
    assert metrics.counter(m.SEND_FAILURES) == 2
    assert metrics.counter(m.SENDS_TOTAL) == 3


def test_only_tick_zero_decides(make_transport, fast_ticks) -> None:
    transport = make_transport(["a"])
    calls = {"n": 0}

    def fail_after_first(*_) -> bool:
        calls["n"] += 1
        return calls["n"] > 1

    transport.fail = fail_after_first

    async def runner() -> DispatchResult:
        return await DispatchScheduler(transport).dispatch(PROFILE, (Channel.A,))

    result = asyncio.run(runner())
    assert result.success
    assert [t.successes for t in result.ticks] == [1, 0, 0]

    transport.fail = lambda *_: True
    assert not asyncio.run(runner()).success


def test_all_channels_succeeds_when_one_channel_does(make_transport, fast_ticks) -> None:
    transport = make_transport(["a"])
    transport.fail = lambda _eid, channel, _cmd: channel is Channel.A
    profile = resolve_damage_profile(1)

    async def runner() -> DispatchResult:
        return await DispatchScheduler(transport).dispatch_all_channels(profile)

    result = asyncio.run(runner())
    assert result.success
    assert not result.per_channel[Channel.A].success
    assert result.per_channel[Channel.B].success
    assert len(transport.pulses()) == 2


def test_combine_results_without_success() -> None:
    combined = combine_results({Channel.A: DispatchResult(targets=1), Channel.B: DispatchResult(targets=1)})
    assert not combined.success
    assert combined.targets == 2


def test_interrupt_wakes_inter_tick_wait(make_transport) -> None:
    transport = make_transport(["a"])

    async def runner() -> tuple[DispatchResult, float]:
        scheduler = DispatchScheduler(transport)
        task = asyncio.create_task(scheduler.dispatch(PROFILE, (Channel.A,)))
        await asyncio.sleep(0.05)
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        scheduler.interrupt_all("test")
        result = await asyncio.wait_for(task, timeout=0.5)
        return result, loop.time() - t0

    result, elapsed = asyncio.run(runner())
    assert result.interrupted
    assert result.ticks_run == 1
    assert result.success
    assert elapsed < 0.5
    assert len(transport.sends) == 1


def test_dispatch_after_interrupt_runs_normally(make_transport, fast_ticks) -> None:
    transport = make_transport(["a"])

    async def runner() -> DispatchResult:
        scheduler = DispatchScheduler(transport)
        scheduler.interrupt_all()
        return await scheduler.dispatch(PROFILE, (Channel.A,))

    result = asyncio.run(runner())
    assert not result.interrupted
    assert result.ticks_run == 3


def test_closed_scheduler_skips(make_transport) -> None:
    transport = make_transport(["a"])

    async def runner() -> DispatchResult:
        scheduler = DispatchScheduler(transport)
        scheduler.close()
        assert scheduler.closed
        return await scheduler.dispatch(PROFILE, (Channel.A,))

    result = asyncio.run(runner())
    assert not result.success
    assert transport.sends == []


def test_yielding_dispatch_waits_for_stop_to_clear(make_transport, fast_ticks) -> None:
    transport = make_transport(["a"])

    async def runner() -> DispatchResult:
        scheduler = DispatchScheduler(transport, yield_to_stop=True)
        scheduler.begin_stop()
        task = asyncio.create_task(scheduler.dispatch(PROFILE, (Channel.A,), duration_s=1))
        await asyncio.sleep(0.05)
        assert transport.sends == []
        scheduler.end_stop()
        return await asyncio.wait_for(task, timeout=1.0)

    result = asyncio.run(runner())
    assert result.success
    assert len(transport.sends) == 1


def test_wait_inflight_tracks_running_ticks(make_transport) -> None:
    transport = make_transport(["a"])
    transport.delay_s = 0.1

    async def runner() -> tuple[bool, bool]:
        scheduler = DispatchScheduler(transport)
        task = asyncio.create_task(scheduler.dispatch(PROFILE, (Channel.A,), duration_s=1))
        await asyncio.sleep(0.02)
        early = await scheduler.wait_inflight(0.01)
        done = await scheduler.wait_inflight(1.0)
        await task
        return early, done

    early, done = asyncio.run(runner())
    assert early is False
    assert done is True


@pytest.mark.parametrize(
    "kwargs",
    [
        {"duration_s": 0},
        {"cadence_hz": 0},
        {"channels": ()},
    ],
)
def test_request_validation(kwargs) -> None:
    params = {"profile": PROFILE, "channels": (Channel.A,), "duration_s": 1, "cadence_hz": 1}
    params.update(kwargs)
    with pytest.raises(ValueError):
        DispatchRequest(**params)


def test_request_tick_math() -> None:
    request = DispatchRequest(PROFILE, (Channel.A, Channel.B), duration_s=3, cadence_hz=2)
    assert request.total_ticks == 6
    assert request.interval_s == pytest.approx(0.5)


def test_slow_channel_does_not_hold_up_the_other(make_transport) -> None:
    transport = make_transport(["a"])
    transport.channel_delay_s[Channel.A] = 0.2
    profile = resolve_damage_profile(1)
    finished: list[tuple[Channel, bool]] = []

    class _RecordingScheduler(DispatchScheduler):
        async def dispatch(self, profile, channels, duration_s=None):
            result = await super().dispatch(profile, channels, duration_s)
            channel = tuple(channels)[0]
            finished.append((channel, Channel.A in transport.done_channels))
            return result

    async def runner() -> DispatchResult:
        return await _RecordingScheduler(transport).dispatch_all_channels(profile)

    result = asyncio.run(runner())
    assert result.success
    assert finished[0] == (Channel.B, False)
    assert finished[1] == (Channel.A, True)


def test_yielded_first_tick_reads_targets_after_stop(make_transport, fast_ticks) -> None:
    transport = make_transport(["a", "b"])

    async def runner() -> DispatchResult:
        scheduler = DispatchScheduler(transport, yield_to_stop=True)
        scheduler.begin_stop()
        task = asyncio.create_task(scheduler.dispatch(PROFILE, (Channel.A,), duration_s=1))
        await asyncio.sleep(0.05)
        transport.bound.discard("b")
        scheduler.end_stop()
        return await asyncio.wait_for(task, timeout=1.0)

    result = asyncio.run(runner())
    assert [t.sends for t in result.ticks] == [1]
    assert [eid for eid, _, _ in transport.sends] == ["a"]
