# outreach/core/reaper.py
"""
Recovery sweeps for rows wedged in 'calling'.

- ``reap``: rows in 'calling' whose last update is older than the stuck-row
  timeout go back to pending (dispatcher crash, lost vendor response).
- ``reconcile``: rows still 'calling' whose Call already reached a terminal
  status are resolved (lost completion webhook).
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from outreach.core.capacity import DispatchTuning
from outreach.core.domain import CallStatus, RowStatus, utc_now
from outreach.core.ports import CallRepository, EventPublisher, RowRepository, RunEvents, run_channel
from outreach.core.run_metrics import MetricsAggregator
from outreach.infra.logging_config import get_logger
from outreach.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

FIX_REASON = "fixed by monitoring"


class StuckRowReaper:
    def __init__(
            self,
            rows: RowRepository,
            calls: CallRepository,
            metrics: MetricsAggregator,
            publisher: EventPublisher,
            tuning: DispatchTuning,
            now: Callable[[], datetime] = utc_now,
    ):
        self._rows = rows
        self._calls = calls
        self._metrics = metrics
        self._publisher = publisher
        self._tuning = tuning
        self._now = now

    async def reap(self, run_id: str) -> int:
        count = await self._rows.reset_stuck(run_id, self._tuning.stuck_row_timeout_seconds, self._now())
        if count <= 0:
            return 0

        DispatchMetrics.stuck_rows_reset(count)
        await self._metrics.increment(run_id, "rows.reset_from_stuck", count)
        await self._publisher.publish(
            run_channel(run_id),
            RunEvents.ROWS_RESET,
            {"run_id": run_id, "count": count, "reason": "stuck_in_calling"},
        )
        logger.warning(
            f"Reset {count} stuck row(s) from 'calling' to 'pending'",
            extra={"run_id": run_id},
        )
        return count

    async def reconcile(self, run_id: str) -> int:
        outcomes = await self._calls.finished_for_calling_rows(run_id)
        fixed = 0

        for outcome in outcomes:
            if outcome.status == CallStatus.FAILED:
                status, path = RowStatus.FAILED, "calls.failed"
            else:
                status, path = RowStatus.COMPLETED, "calls.completed"

            if not await self._rows.resolve(outcome.row_id, status, FIX_REASON, self._now()):
                continue

            fixed += 1
            await self._metrics.increment(run_id, path)
            logger.info(
                f"Reconciled row {outcome.row_id[:8]} -> {status.value} (call {outcome.status.value})",
                extra={"run_id": run_id, "row_id": outcome.row_id},
            )

        if fixed:
            DispatchMetrics.rows_reconciled(fixed)
            await self._metrics.increment(run_id, "rows.reconciled", fixed)
        return fixed
