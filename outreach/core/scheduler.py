# outreach/core/scheduler.py
"""
Run scheduler: the public operations of the dispatch engine.

    schedule_run / clear_scheduled_run / cancel_schedule
    start_run / pause_run / complete_run
    check_scheduled_runs / resume_running_runs
    increment_metric

Scheduled activations are asyncio tasks held on the run's ``RunState`` so
that pausing, re-scheduling or shutting down cancels them instead of
letting them fire into a stale run. ``check_scheduled_runs`` is the
at-least-once backstop when a timer was lost (process restart).
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from outreach.core.dispatch_loop import DispatchLoop
from outreach.core.domain import Run, RunMetrics, RunStatus, utc_now
from outreach.core.errors import (
    DispatchEngineError,
    InvalidScheduleError,
    RunNotFoundError,
    RunStateError,
)
from outreach.core.ports import EventPublisher, RowRepository, RunEvents, RunRepository, org_channel, run_channel
from outreach.core.run_metrics import MetricsAggregator
from outreach.core.run_state import RunStateRegistry
from outreach.infra.logging_config import get_logger

logger = get_logger(__name__)

STARTABLE_FROM = (
    RunStatus.DRAFT,
    RunStatus.READY,
    RunStatus.SCHEDULED,
    RunStatus.PAUSED,
    RunStatus.FAILED,
)
PAUSABLE_FROM = (RunStatus.RUNNING, RunStatus.SCHEDULED)


def parse_schedule_time(value: Union[str, datetime]) -> datetime:
    """ISO-8601 -> aware datetime. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = (value or "").strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidScheduleError(f"Invalid schedule time: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RunScheduler:
    def __init__(
            self,
            runs: RunRepository,
            rows: RowRepository,
            loop: DispatchLoop,
            registry: RunStateRegistry,
            metrics: MetricsAggregator,
            publisher: EventPublisher,
            now: Callable[[], datetime] = utc_now,
    ):
        self.runs = runs
        self.rows = rows
        self.loop = loop
        self.registry = registry
        self.metrics = metrics
        self.publisher = publisher
        self._now = now

    async def _get_run(self, run_id: str, org_id: Optional[str]) -> Run:
        run = await self.runs.get(run_id, org_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    async def _publish_status(self, run: Run, **extra) -> None:
        payload = {"run_id": run.id, "status": run.status.value, **extra}
        await self.publisher.publish(org_channel(run.org_id), RunEvents.RUN_UPDATED, payload)
        await self.publisher.publish(run_channel(run.id), RunEvents.RUN_STATUS_CHANGED, payload)

    # ================================================================
    # Scheduling
    # ================================================================

    async def schedule_run(self, run_id: str, scheduled_at: Union[str, datetime], org_id: str) -> Run:
        at = parse_schedule_time(scheduled_at)
        run = await self._get_run(run_id, org_id)

        state = await self.registry.get_or_create(run_id)
        state.cancel_timer()

        metrics = run.metrics.copy()
        metrics.run.scheduled_time = at.isoformat()
        updated = await self.runs.mark_scheduled(run_id, at, metrics)
        if updated is None:
            await self.registry.discard_if_idle(run_id)
            raise RunStateError(f"Run {run_id} cannot be scheduled from status {run.status.value}")

        delay = max(0.0, (at - self._now()).total_seconds())
        state.timer = asyncio.create_task(
            self._fire(run_id, org_id, delay), name=f"run-timer-{run_id}"
        )
        state.timer.add_done_callback(self._on_task_done)

        await self._publish_status(updated, scheduled_at=at.isoformat())
        logger.info(
            f"Run scheduled for {at.isoformat()} (in {delay:.0f}s)",
            extra={"run_id": run_id, "org_id": org_id},
        )
        return updated

    async def _fire(self, run_id: str, org_id: str, delay: float) -> None:
        await asyncio.sleep(delay)

        state = self.registry.get(run_id)
        if state is not None:
            # Detach first: start_run clears the timer and must not cancel this task
            state.timer = None

        try:
            await self.start_run(run_id, org_id)
        except DispatchEngineError as exc:
            logger.error(
                f"Scheduled start failed: {exc.detail}",
                extra={"run_id": run_id, "org_id": org_id},
            )

    async def clear_scheduled_run(self, run_id: str) -> bool:
        """Cancel the in-process timer, if any. Idempotent."""
        state = self.registry.get(run_id)
        if state is None:
            return False
        cancelled = state.cancel_timer()
        await self.registry.discard_if_idle(run_id)
        if cancelled:
            logger.info("Scheduled activation cancelled", extra={"run_id": run_id})
        return cancelled

    async def cancel_schedule(self, run_id: str, org_id: str) -> Run:
        """Cancel the timer and move a scheduled run back to ready."""
        run = await self._get_run(run_id, org_id)
        await self.clear_scheduled_run(run_id)

        if run.status != RunStatus.SCHEDULED:
            return run

        metrics = run.metrics.copy()
        metrics.run.scheduled_time = None
        updated = await self.runs.transition(
            run_id, RunStatus.READY, from_statuses=[RunStatus.SCHEDULED], metrics=metrics
        )
        if updated is None:
            return await self._get_run(run_id, org_id)

        await self._publish_status(updated)
        return updated

    # ================================================================
    # Start / pause / complete
    # ================================================================

    async def start_run(self, run_id: str, org_id: str) -> bool:
        """
        Start (or restart) dispatching a run.

        Returns False when there was nothing to do: the run is completed or
        already running. A running run may be dispatched by another process,
        so its 'calling' rows are never touched here.
        """
        run = await self._get_run(run_id, org_id)

        if run.status in (RunStatus.COMPLETED, RunStatus.RUNNING):
            logger.info(f"Start ignored: run already {run.status.value}", extra={"run_id": run_id})
            return False

        busy = self.registry.is_processing(run_id)
        await self.clear_scheduled_run(run_id)

        # A paused loop still draining its last batch owns its 'calling' rows
        if not busy:
            reset = await self.rows.reset_calling(run_id, self._now())
            if reset:
                logger.info(f"Reset {reset} row(s) from 'calling' to 'pending'", extra={"run_id": run_id})
                await self.publisher.publish(
                    run_channel(run_id),
                    RunEvents.ROWS_RESET,
                    {"run_id": run_id, "count": reset, "reason": "run_started"},
                )

        now = self._now()

        def _stamp(metrics: RunMetrics) -> None:
            if metrics.run.start_time is None:
                metrics.run.start_time = now.isoformat()
            else:
                metrics.run.restart_count += 1
            metrics.run.paused_outside_hours = False

        updated: Optional[Run] = None
        for _ in range(2):
            metrics = run.metrics.copy()
            _stamp(metrics)
            updated = await self.runs.transition(
                run_id,
                RunStatus.RUNNING,
                from_statuses=STARTABLE_FROM,
                metrics=metrics,
                expected_updated_at=run.updated_at,
            )
            if updated is not None:
                break
            run = await self._get_run(run_id, org_id)
            if run.status in (RunStatus.COMPLETED, RunStatus.RUNNING):
                return False

        if updated is None:
            raise RunStateError(f"Run {run_id} changed concurrently; start not applied")

        await self._publish_status(updated)
        await self._launch_loop(run_id)
        logger.info("Run started", extra={"run_id": run_id, "org_id": org_id})
        return True

    async def _launch_loop(self, run_id: str) -> None:
        state = await self.registry.try_begin(run_id)
        if state is None:
            # The active loop may be on its way out after a pause; check again once it ends
            active = self.registry.get(run_id)
            if active is not None and active.task is not None:
                active.task.add_done_callback(lambda _t: self._spawn(self._relaunch_if_running(run_id)))
            return
        state.task = asyncio.create_task(self.loop.run(state), name=f"dispatch-{run_id}")
        state.task.add_done_callback(self._on_task_done)

    async def _relaunch_if_running(self, run_id: str) -> None:
        run = await self.runs.get(run_id)
        if run is not None and run.status == RunStatus.RUNNING and not self.registry.is_processing(run_id):
            await self._launch_loop(run_id)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(self._on_task_done)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected death of a loop or timer task (run failures are handled inside the loop)."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Task {task.get_name()} died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def pause_run(self, run_id: str, org_id: str) -> Run:
        run = await self._get_run(run_id, org_id)
        if run.status not in PAUSABLE_FROM:
            raise RunStateError(f"Run {run_id} cannot be paused from status {run.status.value}")

        now = self._now()
        metrics = run.metrics.copy()
        metrics.run.last_paused_at = now.isoformat()
        updated = await self.runs.transition(
            run_id, RunStatus.PAUSED, from_statuses=PAUSABLE_FROM, metrics=metrics
        )
        if updated is None:
            raise RunStateError(f"Run {run_id} changed concurrently; pause not applied")

        state = self.registry.get(run_id)
        if state is not None:
            state.cancel_timer()
            state.wake()
            await self.registry.discard_if_idle(run_id)

        await self.publisher.publish(
            run_channel(run_id),
            RunEvents.RUN_PAUSED,
            {"run_id": run_id, "reason": "manual", "paused_at": now.isoformat()},
        )
        await self._publish_status(updated)
        logger.info("Run paused", extra={"run_id": run_id, "org_id": org_id})
        return updated

    async def complete_run(self, run_id: str, org_id: str) -> bool:
        return await self.loop.complete_run(run_id, org_id)

    async def increment_metric(self, run_id: str, path: str, amount: int = 1) -> bool:
        return await self.metrics.increment(run_id, path, amount)

    # ================================================================
    # Recovery triggers
    # ================================================================

    async def check_scheduled_runs(self) -> list[str]:
        """Start every scheduled run whose time has passed."""
        due = await self.runs.list_due_scheduled(self._now())
        started: list[str] = []

        for run in due:
            try:
                if await self.start_run(run.id, run.org_id):
                    started.append(run.id)
            except DispatchEngineError as exc:
                logger.error(
                    f"Could not start due run: {exc.detail}",
                    extra={"run_id": run.id, "org_id": run.org_id},
                )

        if started:
            logger.info(f"Started {len(started)} due scheduled run(s)")
        return started

    async def resume_running_runs(self) -> list[str]:
        """
        Relaunch loops for runs left 'running' by a previous process.

        Startup only. Rows left in 'calling' are not reset here; the loop's
        stuck-row reaper returns them to pending once they go stale.
        """

        def _restarted(metrics: RunMetrics) -> None:
            metrics.run.restart_count += 1
            metrics.run.paused_outside_hours = False

        resumed: list[str] = []
        for run in await self.runs.list_by_status(RunStatus.RUNNING):
            if self.registry.is_processing(run.id):
                continue
            try:
                await self.metrics.update(run.id, _restarted)
                await self._launch_loop(run.id)
                resumed.append(run.id)
            except DispatchEngineError as exc:
                logger.error(
                    f"Could not resume run: {exc.detail}",
                    extra={"run_id": run.id, "org_id": run.org_id},
                )

        if resumed:
            logger.info(f"Resumed {len(resumed)} orphaned running run(s)")
        return resumed

    async def shutdown(self) -> None:
        """Cancel timers and loops (process shutdown). Runs stay 'running' for resume."""
        tasks: list[asyncio.Task] = []
        for state in self.registry.states():
            state.cancel_timer()
            if state.task is not None and not state.task.done():
                state.task.cancel()
                tasks.append(state.task)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Scheduler shut down ({len(tasks)} loop(s) cancelled)")


class ScheduledRunPoller:
    """
    In-process scheduler trigger: calls ``check_scheduled_runs`` on an interval.

    Usage:
        poller = ScheduledRunPoller(scheduler, interval=30)
        await poller.start()
        ...
        await poller.stop()
    """

    def __init__(self, scheduler: RunScheduler, *, interval: float = 30.0):
        self._scheduler = scheduler
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="scheduled_run_poller")
        self._task.add_done_callback(self._on_task_done)
        logger.info(f"Scheduled-run poller started: interval={self._interval}s")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Scheduled-run poller stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self._scheduler.check_scheduled_runs()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Scheduled-run check failed: {exc}", exc_info=True)
            await asyncio.sleep(self._interval)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Scheduled-run poller died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
