# outreach/core/run_metrics.py
"""
Run metrics aggregator.

Increments are read-modify-write against the run record, conditioned on the
``updated_at`` value that was read. A conflict means another writer (the loop
or a webhook) updated the run in between; the write is re-read and retried
once. Notifications are debounced per (run, path): the first increment in a
window arms one publish, later increments in the same window only refresh the
value that publish will carry.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable, Optional

from outreach.core.domain import Run, RunMetrics
from outreach.core.errors import RunNotFoundError
from outreach.core.ports import EventPublisher, RunEvents, RunRepository, run_channel
from outreach.infra.logging_config import get_logger
from outreach.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

WRITE_ATTEMPTS = 2


class MetricsAggregator:
    def __init__(
            self,
            runs: RunRepository,
            publisher: EventPublisher,
            debounce_seconds: float = 0.5,
    ):
        self._runs = runs
        self._publisher = publisher
        self._debounce = debounce_seconds
        self._pending: dict[tuple[str, str], asyncio.Task] = {}
        self._latest: dict[tuple[str, str], Any] = {}

    async def increment(self, run_id: str, path: str, amount: int = 1) -> bool:
        """Increment the counter at ``path`` (e.g. "calls.completed")."""
        def _apply(metrics: RunMetrics) -> None:
            metrics.increment(path, amount)

        return await self.update(run_id, _apply, notify_paths=(path,)) is not None

    async def update(
            self,
            run_id: str,
            mutate: Callable[[RunMetrics], None],
            notify_paths: Iterable[str] = (),
    ) -> Optional[Run]:
        """
        Apply ``mutate`` to a fresh copy of the run's metrics and write it
        back conditionally. Returns the updated run, or None if both
        attempts lost the race.
        """
        for attempt in range(WRITE_ATTEMPTS):
            run = await self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")

            metrics = run.metrics.copy()
            mutate(metrics)

            updated = await self._runs.write_metrics(run_id, metrics, run.updated_at)
            if updated is not None:
                for path in notify_paths:
                    self._notify(run_id, path, updated.metrics.get(path))
                return updated

            DispatchMetrics.metric_conflict()
            logger.debug(f"Metrics write conflict: run={run_id[:8]} attempt={attempt + 1}")

        logger.warning(
            f"Metrics update dropped after {WRITE_ATTEMPTS} conflicting writes: run={run_id[:8]}",
            extra={"run_id": run_id},
        )
        return None

    # ----------------------------------------------------------------
    # Debounced notifications
    # ----------------------------------------------------------------

    def _notify(self, run_id: str, path: str, value: Any) -> None:
        key = (run_id, path)
        self._latest[key] = value

        task = self._pending.get(key)
        if task is not None and not task.done():
            return

        self._pending[key] = asyncio.create_task(
            self._publish_after_window(key), name=f"metrics-notify-{run_id}"
        )

    async def _publish_after_window(self, key: tuple[str, str]) -> None:
        run_id, path = key
        try:
            if self._debounce > 0:
                await asyncio.sleep(self._debounce)
        finally:
            self._pending.pop(key, None)
            value = self._latest.pop(key, None)

        await self._publisher.publish(
            run_channel(run_id),
            RunEvents.METRICS_UPDATED,
            {"run_id": run_id, "path": path, "value": value},
        )

    async def flush(self) -> None:
        """Wait for armed notifications (tests, shutdown)."""
        tasks = [t for t in self._pending.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
        self._latest.clear()
