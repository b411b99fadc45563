# outreach/core/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Protocol, Optional, Sequence

from outreach.core.domain import (
    ActiveCallCounts,
    Call,
    CallOutcome,
    Campaign,
    DispatchResult,
    Organization,
    Row,
    RowStats,
    RowStatus,
    Run,
    RunMetrics,
    RunStatus,
)


# ============================================================================
# PERSISTENCE
# ============================================================================

class RunRepository(Protocol):
    async def get(self, run_id: str, org_id: Optional[str] = None) -> Optional[Run]: ...

    async def list_by_status(self, status: RunStatus) -> list[Run]: ...

    async def list_due_scheduled(self, now: datetime) -> list[Run]: ...

    async def mark_scheduled(self, run_id: str, scheduled_at: datetime, metrics: RunMetrics) -> Optional[Run]:
        """Set status=scheduled unless the run is running or completed. None if refused."""
        ...

    async def transition(
        self,
        run_id: str,
        to_status: RunStatus,
        from_statuses: Optional[Sequence[RunStatus]] = None,
        metrics: Optional[RunMetrics] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> Optional[Run]:
        """
        Conditional status change.

        Returns the updated run, or None when the current status is not in
        ``from_statuses`` or the run was written after ``expected_updated_at``.
        """
        ...

    async def write_metrics(self, run_id: str, metrics: RunMetrics, expected_updated_at: Optional[datetime]) -> Optional[Run]:
        """Optimistic write. None means the run changed since it was read."""
        ...


class RowRepository(Protocol):
    async def select_claimable(self, run_id: str, limit: int, exclude_ids: Sequence[str] = ()) -> list[Row]:
        """Pending rows ordered by priority desc, sort_index asc."""
        ...

    async def claim(self, row_id: str, processor_id: str, claimed_at: datetime) -> Optional[Row]:
        """pending -> calling. None when the row is no longer pending."""
        ...

    async def release(self, row_id: str, reason: str, at: datetime) -> bool:
        """calling -> pending with a skip reason. No retry increment."""
        ...

    async def mark_dispatched(self, row_id: str, vendor_call_id: Optional[str], at: datetime) -> None: ...

    async def record_failure(self, row_id: str, error: str, max_retries: int, at: datetime) -> Optional[Row]:
        """
        Increment retry_count. The row becomes failed once retry_count
        reaches ``max_retries``, otherwise it returns to pending.
        """
        ...

    async def count_outstanding(self, run_id: str) -> int: ...

    async def stats(self, run_id: str) -> RowStats: ...

    async def reset_calling(self, run_id: str, at: datetime) -> int: ...

    async def reset_stuck(self, run_id: str, older_than_seconds: int, at: datetime) -> int: ...

    async def resolve(self, row_id: str, status: RowStatus, reason: str, at: datetime) -> bool:
        """calling -> terminal status after the call finished without a webhook update."""
        ...


class CallRepository(Protocol):
    async def create(self, call: Call) -> Call: ...

    async def count_active(self, run_id: str, org_id: str) -> ActiveCallCounts: ...

    async def find_recent_for_row(self, row_id: str, since: datetime) -> Optional[Call]: ...

    async def finished_for_calling_rows(self, run_id: str) -> list[CallOutcome]: ...


class Directory(Protocol):
    """Read-only organization/campaign lookups."""

    async def get_organization(self, org_id: str) -> Optional[Organization]: ...

    async def get_campaign(self, campaign_id: str, org_id: str) -> Optional[Campaign]: ...


# ============================================================================
# OUTBOUND COLLABORATORS
# ============================================================================

class TelephonyDispatcher(Protocol):
    async def dispatch(
        self,
        to_number: str,
        from_number: str,
        agent_id: str,
        variables: dict[str, str],
        metadata: dict[str, Any],
    ) -> DispatchResult:
        """Place one outbound call. Vendor/network failures return ok=False."""
        ...


class EventPublisher(Protocol):
    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        """Best effort. Never raises."""
        ...


# ============================================================================
# EVENT CHANNELS
# ============================================================================

class RunEvents:
    RUN_UPDATED = "run-updated"                # org channel
    RUN_STATUS_CHANGED = "run-status-changed"  # run channel
    RUN_PAUSED = "run-paused"
    CALL_STARTED = "call-started"              # run and org channels
    METRICS_UPDATED = "metrics-updated"
    ROWS_RESET = "rows-reset"


def run_channel(run_id: str) -> str:
    return f"run-{run_id}"


def org_channel(org_id: str) -> str:
    return f"org-{org_id}"
