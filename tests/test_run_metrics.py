# tests/test_run_metrics.py
import asyncio

import pytest

from fakes import FakeRunRepository, RecordingPublisher
from outreach.core.domain import Run, RunStatus
from outreach.core.errors import RunNotFoundError
from outreach.core.ports import RunEvents
from outreach.core.run_metrics import MetricsAggregator
from outreach.infra.metrics import get_metrics_collector


def _setup(debounce: float = 0.0):
    runs = FakeRunRepository()
    runs.add(Run(id="run-1", org_id="org-1", campaign_id="c", status=RunStatus.RUNNING))
    publisher = RecordingPublisher()
    return runs, publisher, MetricsAggregator(runs, publisher, debounce_seconds=debounce)


class TestMetricsAggregator:
    @pytest.mark.asyncio
    async def test_increment_persists(self):
        runs, _, aggregator = _setup()
        assert await aggregator.increment("run-1", "calls.completed") is True
        assert await aggregator.increment("run-1", "calls.completed", 2) is True
        assert runs.peek("run-1").metrics.calls.completed == 3
        await aggregator.close()

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self):
        runs, _, aggregator = _setup()
        await asyncio.gather(*(aggregator.increment("run-1", "calls.failed") for _ in range(20)))
        assert runs.peek("run-1").metrics.calls.failed == 20
        await aggregator.close()

    @pytest.mark.asyncio
    async def test_conflict_is_retried_once(self):
        runs, _, aggregator = _setup()
        runs.conflicts_to_inject = 1
        assert await aggregator.increment("run-1", "calls.completed") is True
        assert runs.peek("run-1").metrics.calls.completed == 1
        assert get_metrics_collector().get_counter("run_metric_conflicts_total") == 1
        await aggregator.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_two_conflicts(self):
        runs, _, aggregator = _setup()
        runs.conflicts_to_inject = 2
        assert await aggregator.increment("run-1", "calls.completed") is False
        assert runs.peek("run-1").metrics.calls.completed == 0
        await aggregator.close()

    @pytest.mark.asyncio
    async def test_missing_run(self):
        _, _, aggregator = _setup()
        with pytest.raises(RunNotFoundError):
            await aggregator.increment("nope", "calls.completed")

    @pytest.mark.asyncio
    async def test_negative_monotonic_increment_rejected(self):
        runs, _, aggregator = _setup()
        with pytest.raises(ValueError):
            await aggregator.increment("run-1", "calls.completed", -1)
        assert runs.peek("run-1").metrics.calls.completed == 0

    @pytest.mark.asyncio
    async def test_update_applies_mutation(self):
        runs, _, aggregator = _setup()

        def _mutate(metrics):
            metrics.run.last_call_time = "2026-01-01T00:00:00+00:00"

        updated = await aggregator.update("run-1", _mutate)
        assert updated.metrics.run.last_call_time == "2026-01-01T00:00:00+00:00"
        assert runs.peek("run-1").metrics.run.last_call_time == "2026-01-01T00:00:00+00:00"


class TestDebouncedNotifications:
    @pytest.mark.asyncio
    async def test_burst_produces_one_event_with_latest_value(self):
        _, publisher, aggregator = _setup(debounce=0.05)
        for _ in range(5):
            await aggregator.increment("run-1", "calls.completed")
        assert publisher.named(RunEvents.METRICS_UPDATED) == []

        await aggregator.flush()

        events = publisher.named(RunEvents.METRICS_UPDATED)
        assert len(events) == 1
        channel, payload = events[0]
        assert channel == "run-run-1"
        assert payload == {"run_id": "run-1", "path": "calls.completed", "value": 5}

    @pytest.mark.asyncio
    async def test_paths_debounce_independently(self):
        _, publisher, aggregator = _setup(debounce=0.05)
        await aggregator.increment("run-1", "calls.completed")
        await aggregator.increment("run-1", "calls.failed")
        await aggregator.flush()
        paths = sorted(p["path"] for _, p in publisher.named(RunEvents.METRICS_UPDATED))
        assert paths == ["calls.completed", "calls.failed"]

    @pytest.mark.asyncio
    async def test_next_window_publishes_again(self):
        _, publisher, aggregator = _setup(debounce=0.01)
        await aggregator.increment("run-1", "calls.completed")
        await aggregator.flush()
        await aggregator.increment("run-1", "calls.completed")
        await aggregator.flush()
        values = [p["value"] for _, p in publisher.named(RunEvents.METRICS_UPDATED)]
        assert values == [1, 2]

    @pytest.mark.asyncio
    async def test_close_drops_pending(self):
        _, publisher, aggregator = _setup(debounce=10)
        await aggregator.increment("run-1", "calls.completed")
        await aggregator.close()
        assert publisher.named(RunEvents.METRICS_UPDATED) == []
