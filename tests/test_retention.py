import asyncio

import pytest

from lanrelay.retention import RetentionSweeper


class StubOrchestrator:
    def __init__(self, results=None) -> None:
        self.results = list(results or [])
        self.calls: list[float] = []

    async def sweep_retention(self, max_age_seconds, now=None):
        self.calls.append(max_age_seconds)
        result = self.results.pop(0) if self.results else []
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.mark.asyncio
async def test_sweep_once_passes_max_age(caplog):
    orchestrator = StubOrchestrator([["old_1", "old_2"]])
    sweeper = RetentionSweeper(orchestrator, max_age=3600, interval=60)

    with caplog.at_level("INFO", logger="retention"):
        removed = await sweeper.sweep_once()

    assert removed == ["old_1", "old_2"]
    assert orchestrator.calls == [3600.0]
    assert "removed 2 streams" in caplog.text


@pytest.mark.asyncio
async def test_background_loop_survives_failures(caplog):
    orchestrator = StubOrchestrator([RuntimeError("disk gone"), []])
    sweeper = RetentionSweeper(orchestrator, max_age=10, interval=0.01)

    with caplog.at_level("WARNING", logger="retention"):
        await sweeper.start()
        assert sweeper.running
        for _ in range(200):
            if len(orchestrator.calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

    assert len(orchestrator.calls) >= 2
    assert "retention sweep failed: disk gone" in caplog.text
    assert not sweeper.running


@pytest.mark.parametrize("kwargs", [{"interval": 0}, {"max_age": 0}])
def test_rejects_non_positive_settings(kwargs):
    with pytest.raises(ValueError):
        RetentionSweeper(StubOrchestrator(), **kwargs)
