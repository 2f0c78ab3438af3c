import asyncio

import pytest

from lanrelay.relay_supervisor import RelayHealth
from lanrelay.watchdog import RelayWatchdog


class ManualClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _watchdog(orchestrator, supervisor, clock, **kwargs):
    options = dict(interval=60, grace=30, clock=clock)
    options.update(kwargs)
    return RelayWatchdog(orchestrator, supervisor, **options)


@pytest.mark.asyncio
async def test_relay_outage_stops_running_streams_after_grace(orchestrator, supervisor, spawner):
    await orchestrator.create_or_start({"id": "studio", "deviceId": "usb-mic"})
    await orchestrator.create_or_start({"id": "loop", "inputFile": "/music/loop.mp3"})
    clock = ManualClock()
    watchdog = _watchdog(orchestrator, supervisor, clock)

    assert await watchdog.check_once() == []
    supervisor.health = RelayHealth.CRITICAL
    assert await watchdog.check_once() == []
    assert watchdog.down_since == 1000.0

    clock.now += 10
    assert await watchdog.check_once() == []
    assert orchestrator.get_stream_status("studio")["status"] == "running"

    clock.now += 25
    halted = await watchdog.check_once()

    assert sorted(halted) == ["loop", "studio"]
    assert spawner.live() == []
    assert orchestrator.guard.holder("usb-mic") is None
    snapshot = orchestrator.get_stream_status("studio")
    assert snapshot["status"] == "error"
    assert snapshot["error"]["category"] == "connectivity"
    assert "relay server is down" in snapshot["error"]["title"]
    assert "Dependency chain broken" in snapshot["error"]["technicalDetails"]
    events = [
        record["event"]
        for record in orchestrator.events.history_snapshot()
        if record["streamId"] == "studio"
    ]
    assert events[-2:] == ["stopped", "error"]


@pytest.mark.asyncio
async def test_relay_recovering_within_grace_keeps_streams(orchestrator, supervisor, spawner):
    await orchestrator.create_or_start({"id": "studio", "deviceId": "usb-mic"})
    clock = ManualClock()
    watchdog = _watchdog(orchestrator, supervisor, clock)

    supervisor.health = RelayHealth.CRITICAL
    await watchdog.check_once()
    clock.now += 20
    supervisor.health = RelayHealth.HEALTHY
    await watchdog.check_once()
    assert watchdog.down_since is None

    # A fresh outage restarts the grace window.
    supervisor.health = RelayHealth.CRITICAL
    clock.now += 15
    assert await watchdog.check_once() == []
    clock.now += 15
    assert await watchdog.check_once() == []

    assert orchestrator.get_stream_status("studio")["status"] == "running"
    assert len(spawner.live()) == 1


@pytest.mark.asyncio
async def test_degraded_relay_counts_as_up(orchestrator, supervisor):
    await orchestrator.create_or_start({"id": "studio", "deviceId": "usb-mic"})
    clock = ManualClock()
    watchdog = _watchdog(orchestrator, supervisor, clock, grace=0)

    supervisor.health = RelayHealth.DEGRADED
    await watchdog.check_once()
    clock.now += 120
    assert await watchdog.check_once() == []

    assert watchdog.down_since is None
    assert orchestrator.get_stream_status("studio")["status"] == "running"


@pytest.mark.asyncio
async def test_stopped_streams_are_left_alone(orchestrator, supervisor):
    await orchestrator.create_or_start({"id": "studio", "deviceId": "usb-mic"})
    await orchestrator.stop("studio")
    clock = ManualClock()
    watchdog = _watchdog(orchestrator, supervisor, clock, grace=5)

    supervisor.health = RelayHealth.CRITICAL
    await watchdog.check_once()
    clock.now += 10

    assert await watchdog.check_once() == []
    snapshot = orchestrator.get_stream_status("studio")
    assert snapshot["status"] == "stopped"
    assert snapshot["error"] is None


class FlakySupervisor:
    def __init__(self) -> None:
        self.calls = 0

    async def get_status(self):
        self.calls += 1
        raise RuntimeError("scan failed")


@pytest.mark.asyncio
async def test_background_loop_survives_status_errors(orchestrator, caplog):
    flaky = FlakySupervisor()
    watchdog = RelayWatchdog(orchestrator, flaky, interval=0.01, grace=1)

    with caplog.at_level("WARNING", logger="relay_watchdog"):
        await watchdog.start()
        assert watchdog.running
        for _ in range(200):
            if flaky.calls >= 2:
                break
            await asyncio.sleep(0.01)
        await watchdog.stop()

    assert flaky.calls >= 2
    assert "relay health check failed: scan failed" in caplog.text
    assert not watchdog.running


@pytest.mark.parametrize("kwargs", [{"interval": 0}, {"grace": -1}])
def test_rejects_bad_settings(orchestrator, supervisor, kwargs):
    with pytest.raises(ValueError):
        RelayWatchdog(orchestrator, supervisor, **kwargs)
