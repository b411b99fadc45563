# outreach/core/dispatch_loop.py
"""
Per-run dispatch loop.

One loop instance per run (see ``RunStateRegistry.try_begin``). Each
iteration:

    reload run -> office hours -> capacity -> batch size -> select rows
    -> claim + dispatch each row (rate limited) -> reconcile -> adapt size
    -> inter-batch wait

The loop exits when the run is no longer 'running' or when no row is left
pending or calling (the run is then completed). Row-level errors stay on the
row; anything else escaping an iteration fails the run.
"""
from __future__ import annotations

import asyncio
import json
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from outreach.core.capacity import DispatchTuning, available_slots, next_batch_size
from outreach.core.claims import RowClaimer
from outreach.core.domain import (
    Call,
    Campaign,
    DispatchResult,
    Organization,
    Row,
    RowStatus,
    Run,
    RunMetrics,
    RunStatus,
    utc_now,
)
from outreach.core.errors import (
    CampaignNotFoundError,
    DispatchError,
    MissingPhoneNumberError,
    OrganizationNotFoundError,
    RunNotFoundError,
)
from outreach.core.office_hours import is_recipient_callable, is_within_office_hours
from outreach.core.ports import (
    CallRepository,
    Directory,
    EventPublisher,
    RowRepository,
    RunEvents,
    RunRepository,
    TelephonyDispatcher,
    org_channel,
    run_channel,
)
from outreach.core.reaper import StuckRowReaper
from outreach.core.run_metrics import MetricsAggregator
from outreach.core.run_state import RunState, RunStateRegistry
from outreach.infra.logging_config import LogContext, get_logger, mask_phone
from outreach.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

SKIP_PATIENT_HOURS = "outside_patient_hours"
NOT_COMPLETABLE = (RunStatus.COMPLETED,)


@dataclass
class BatchOutcome:
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    hours_closed: bool = False
    backed_off: bool = False


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _first(variables: dict, *keys: str) -> Any:
    for key in keys:
        value = variables.get(key)
        if value not in (None, ""):
            return value
    return None


def build_call_variables(row: Row, run: Run, org: Organization, campaign: Campaign) -> dict[str, str]:
    """
    Dynamic variables handed to the voice agent.

    Row payload first, then engine-provided context. Every value is a
    string; null values are dropped.
    """
    variables = row.variables
    first_name = _first(variables, "first_name", "firstName")
    last_name = _first(variables, "last_name", "lastName")
    phone = row.phone_number

    merged: dict[str, Any] = dict(variables)
    merged.update({
        "organization_name": org.name,
        "campaign_name": campaign.name,
        "custom_prompt": run.custom_prompt,
        "retry_count": row.retry_count,
        "patient_first_name": first_name,
        "patient_last_name": last_name,
        "patient_phone": phone,
        "first_name": first_name,
        "last_name": last_name,
        "phone": phone,
    })
    return {k: _stringify(v) for k, v in merged.items() if v is not None}


class DispatchLoop:
    def __init__(
            self,
            runs: RunRepository,
            rows: RowRepository,
            calls: CallRepository,
            directory: Directory,
            dispatcher: TelephonyDispatcher,
            publisher: EventPublisher,
            metrics: MetricsAggregator,
            registry: RunStateRegistry,
            tuning: DispatchTuning,
            processor_id: str,
            now: Callable[[], datetime] = utc_now,
    ):
        self.runs = runs
        self.rows = rows
        self.calls = calls
        self.directory = directory
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.metrics = metrics
        self.registry = registry
        self.tuning = tuning
        self.processor_id = processor_id
        self._now = now

        self.claimer = RowClaimer(rows, processor_id, now=now)
        self.reaper = StuckRowReaper(rows, calls, metrics, publisher, tuning, now=now)

    # ================================================================
    # Entry point
    # ================================================================

    async def run(self, state: RunState) -> None:
        """
        Drive one run until it stops being 'running' or runs out of rows.

        ``state`` must already be marked as processing by the registry.
        """
        run_id = state.run_id
        ctx = LogContext(logger, run_id=run_id)
        ctx.info("Dispatch loop started")

        try:
            await self._loop(state, ctx)
        except asyncio.CancelledError:
            ctx.info("Dispatch loop cancelled")
            raise
        except Exception as exc:
            ctx.error(f"Dispatch loop failed: {exc}", exc_info=True)
            await self._fail_run(run_id, exc)
        finally:
            await self.registry.finish(run_id)
            ctx.info("Dispatch loop exited")

    async def _loop(self, state: RunState, ctx: LogContext) -> None:
        run_id = state.run_id

        while True:
            run = await self.runs.get(run_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if run.status != RunStatus.RUNNING:
                ctx.info(f"Run status is {run.status.value}; stopping")
                return

            ctx = ctx.bind(org_id=run.org_id)

            org = await self.directory.get_organization(run.org_id)
            if org is None:
                raise OrganizationNotFoundError(f"Organization {run.org_id} not found")

            if not is_within_office_hours(org, self._now()):
                await self._pause_outside_hours(run, ctx)
                await state.nap(self.tuning.outside_hours_wait_seconds)
                continue

            if run.metrics.run.paused_outside_hours:
                await self._resume_inside_hours(run, ctx)

            campaign = await self.directory.get_campaign(run.campaign_id, run.org_id)
            if campaign is None or not campaign.agent_id:
                raise CampaignNotFoundError(f"Campaign {run.campaign_id} not found or has no agent")

            if state.reaper_due(self.tuning.reaper_interval_seconds):
                await self.reaper.reap(run_id)

            # Read fresh every iteration: other runs share the org budget
            active = await self.calls.count_active(run_id, run.org_id)
            slots = available_slots(self.tuning.concurrency_limit(org), active)
            if slots <= 0:
                ctx.debug(f"No capacity (run={active.run}, org={active.org}); waiting")
                await state.nap(self.tuning.no_capacity_wait_seconds)
                continue

            size = next_batch_size(slots, state.sizer.size, run.config.batch_size)
            batch = await self.rows.select_claimable(run_id, size, state.recent_ids())

            if not batch:
                if await self.rows.count_outstanding(run_id) == 0:
                    if await self.complete_run(run_id, run.org_id):
                        return
                await state.nap(self.tuning.idle_wait_seconds)
                continue

            outcome = await self._process_batch(run, org, campaign, batch, state, ctx)
            await self.reaper.reconcile(run_id)

            new_size = state.sizer.record_batch(outcome.successes, outcome.failures)
            ctx.info(
                f"Batch done: ok={outcome.successes} failed={outcome.failures} "
                f"skipped={outcome.skipped} next_size={new_size}"
            )

            if outcome.hours_closed or outcome.backed_off:
                continue

            await state.nap(self.tuning.call_interval(run.config))

    # ================================================================
    # Batch processing
    # ================================================================

    async def _process_batch(
            self,
            run: Run,
            org: Organization,
            campaign: Campaign,
            batch: list[Row],
            state: RunState,
            ctx: LogContext,
    ) -> BatchOutcome:
        outcome = BatchOutcome()
        interval = self.tuning.call_interval(run.config)
        max_retries = self.tuning.max_retries(run.config)

        for row in batch:
            wait = state.seconds_until_next_call(interval)
            if wait > 0:
                await asyncio.sleep(wait)

            if not is_within_office_hours(org, self._now()):
                ctx.info("Office hours closed mid-batch; stopping batch")
                outcome.hours_closed = True
                break

            state.remember(row.id)
            claimed = await self.claimer.claim(row)
            if claimed is None:
                continue

            row_ctx = ctx.bind(row_id=claimed.id)

            if run.config.respect_patient_timezone and not is_recipient_callable(
                    claimed.timezone, self._now(), run.config.call_start_hour, run.config.call_end_hour
            ):
                await self.claimer.release(claimed, SKIP_PATIENT_HOURS)
                await self.metrics.increment(run.id, "calls.skipped")
                DispatchMetrics.row_skipped("patient_timezone")
                outcome.skipped += 1
                row_ctx.debug(f"Recipient outside calling window ({claimed.timezone})")
                continue

            try:
                result = await self._dispatch_row(run, org, campaign, claimed, state, row_ctx)
            except DispatchError as exc:
                result = DispatchResult(ok=False, error=exc.detail)

            if result.ok:
                outcome.successes += 1
                state.streak.record_success()
                continue

            outcome.failures += 1
            await self._record_failure(run, claimed, result.error or "Dispatch failed", max_retries, row_ctx)

            if state.streak.record_error():
                new_size = state.sizer.shrink()
                backoff = state.streak.backoff()
                ctx.warning(
                    f"{state.streak.count} consecutive dispatch errors; "
                    f"batch size -> {new_size}, backing off {backoff:.1f}s"
                )
                await state.nap(backoff)
                outcome.backed_off = True
                break

        return outcome

    async def _dispatch_row(
            self,
            run: Run,
            org: Organization,
            campaign: Campaign,
            row: Row,
            state: RunState,
            ctx: LogContext,
    ) -> DispatchResult:
        to_number = row.phone_number
        if not to_number:
            raise MissingPhoneNumberError()
        if not org.phone:
            raise DispatchError("Organization has no outbound phone number")

        variables = build_call_variables(row, run, org, campaign)
        metadata = {
            "run_id": run.id,
            "row_id": row.id,
            "org_id": run.org_id,
            "campaign_id": run.campaign_id,
            "patient_id": row.patient_id,
        }

        with DispatchMetrics.track_dispatch_time():
            try:
                result = await self.dispatcher.dispatch(to_number, org.phone, campaign.agent_id, variables, metadata)
            except Exception as exc:
                ctx.error(f"Telephony dispatcher raised: {exc}", exc_info=True)
                result = DispatchResult(ok=False, error=f"{exc.__class__.__name__}: {exc}")
        state.mark_call()

        existing: Optional[Call] = None
        if not result.ok:
            existing = await self._verify_dispatch(row, ctx)
            if existing is None:
                return result
            result = DispatchResult(ok=True, call_id=existing.retell_call_id or existing.id)

        now = self._now()
        await self.rows.mark_dispatched(row.id, result.call_id, now)

        if existing is None:
            call = await self.calls.create(Call(
                id=str(uuid.uuid4()),
                org_id=run.org_id,
                agent_id=campaign.agent_id,
                to_number=to_number,
                from_number=org.phone,
                run_id=run.id,
                row_id=row.id,
                patient_id=row.patient_id,
                campaign_id=run.campaign_id,
                retell_call_id=result.call_id,
                metadata={"processor_id": self.processor_id},
            ))
        else:
            call = existing

        def _started(metrics: RunMetrics) -> None:
            metrics.increment("calls.calling")
            metrics.run.last_call_time = now.isoformat()

        await self.metrics.update(run.id, _started, notify_paths=("calls.calling",))

        event = {
            "run_id": run.id,
            "row_id": row.id,
            "call_id": call.id,
            "vendor_call_id": result.call_id,
        }
        await self.publisher.publish(run_channel(run.id), RunEvents.CALL_STARTED, event)
        await self.publisher.publish(org_channel(run.org_id), RunEvents.CALL_STARTED, event)

        DispatchMetrics.call_dispatched(run.org_id)
        ctx.info(f"Call dispatched to {mask_phone(to_number)} (vendor id {result.call_id})")
        return result

    async def _verify_dispatch(self, row: Row, ctx: LogContext) -> Optional[Call]:
        """A failed API response may have raced a webhook that already created the call."""
        if self.tuning.verify_delay_seconds > 0:
            await asyncio.sleep(self.tuning.verify_delay_seconds)

        since = self._now() - timedelta(seconds=self.tuning.verify_window_seconds)
        existing = await self.calls.find_recent_for_row(row.id, since)
        if existing is not None:
            ctx.warning(f"Dispatch reported failure but call {existing.id[:8]} exists; treating as dispatched")
        return existing

    async def _record_failure(
            self,
            run: Run,
            row: Row,
            error: str,
            max_retries: int,
            ctx: LogContext,
    ) -> None:
        updated = await self.rows.record_failure(row.id, error[:500], max_retries, self._now())
        if updated is None:
            ctx.warning("Failure not recorded: row is no longer calling")
            return

        if updated.status == RowStatus.FAILED:
            DispatchMetrics.dispatch_failed(run.org_id, "failed")
            await self.metrics.increment(run.id, "calls.failed")
            ctx.warning(f"Row failed permanently after {updated.retry_count} attempt(s): {error[:120]}")
        else:
            DispatchMetrics.dispatch_failed(run.org_id, "retry")
            await self.metrics.increment(run.id, "calls.retried")
            ctx.info(f"Dispatch failed, will retry ({updated.retry_count}/{max_retries}): {error[:120]}")

    # ================================================================
    # Run-level transitions
    # ================================================================

    async def complete_run(self, run_id: str, org_id: Optional[str] = None) -> bool:
        """
        Mark the run completed if nothing is left pending or calling.

        Idempotent: a completed run is left untouched. Returns True only
        when this call performed the transition.
        """
        for _ in range(2):
            run = await self.runs.get(run_id, org_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if run.status in NOT_COMPLETABLE:
                return False

            stats = await self.rows.stats(run_id)
            if stats.outstanding > 0:
                logger.info(
                    f"Run not completed: {stats.outstanding} row(s) still outstanding",
                    extra={"run_id": run_id},
                )
                return False

            now = self._now()
            metrics = run.metrics.copy()
            metrics.run.end_time = now.isoformat()
            if metrics.run.start_time:
                started = datetime.fromisoformat(metrics.run.start_time)
                metrics.run.duration = max(0, int((now - started).total_seconds()))
            metrics.run.completion_status = RunStatus.COMPLETED.value
            metrics.run.paused_outside_hours = False
            metrics.calls.pending = 0
            metrics.calls.calling = 0

            updated = await self.runs.transition(
                run_id,
                RunStatus.COMPLETED,
                from_statuses=[s for s in RunStatus if s not in NOT_COMPLETABLE],
                metrics=metrics,
                expected_updated_at=run.updated_at,
            )
            if updated is None:
                continue

            DispatchMetrics.run_completed()
            await self._publish_status(updated)
            logger.info(
                f"Run completed: completed={stats.completed} failed={stats.failed} skipped={stats.skipped}",
                extra={"run_id": run_id, "org_id": updated.org_id},
            )
            return True

        return False

    async def _fail_run(self, run_id: str, exc: Exception) -> None:
        now = self._now()
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

        try:
            run = await self.runs.get(run_id)
            if run is None:
                return
            metrics = run.metrics.copy()
            metrics.run.error = str(exc) or exc.__class__.__name__
            metrics.run.error_stack = stack
            metrics.run.error_time = now.isoformat()
            metrics.run.completion_status = RunStatus.FAILED.value
            updated = await self.runs.transition(
                run_id,
                RunStatus.FAILED,
                from_statuses=[RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.SCHEDULED],
                metrics=metrics,
            )
        except Exception as store_exc:
            logger.error(
                f"Could not mark run failed: {store_exc}",
                exc_info=True,
                extra={"run_id": run_id},
            )
            return

        DispatchMetrics.run_failed()
        if updated is not None:
            await self._publish_status(updated, error=metrics.run.error)

    async def _pause_outside_hours(self, run: Run, ctx: LogContext) -> None:
        if run.metrics.run.paused_outside_hours:
            ctx.debug("Still outside office hours")
            return

        now = self._now()

        def _mark(metrics: RunMetrics) -> None:
            metrics.run.paused_outside_hours = True
            metrics.run.last_paused_at = now.isoformat()

        await self.metrics.update(run.id, _mark)
        await self.publisher.publish(
            run_channel(run.id),
            RunEvents.RUN_PAUSED,
            {"run_id": run.id, "reason": "outside_office_hours", "paused_at": now.isoformat()},
        )
        ctx.info(f"Outside office hours; waiting {self.tuning.outside_hours_wait_seconds:.0f}s")

    async def _resume_inside_hours(self, run: Run, ctx: LogContext) -> None:
        def _clear(metrics: RunMetrics) -> None:
            metrics.run.paused_outside_hours = False

        await self.metrics.update(run.id, _clear)
        ctx.info("Office hours open again; resuming dispatch")

    async def _publish_status(self, run: Run, error: Optional[str] = None) -> None:
        payload: dict[str, Any] = {"run_id": run.id, "status": run.status.value}
        if error:
            payload["error"] = error
        await self.publisher.publish(run_channel(run.id), RunEvents.RUN_STATUS_CHANGED, payload)
        await self.publisher.publish(org_channel(run.org_id), RunEvents.RUN_UPDATED, payload)
